"""
Unit tests for the Policy Decision Point HTTP service.
"""

import time

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_policy.app.main import PolicyDecisionService, create_app
from service_policy.app.persistence.memory import InMemoryDecisionLogStore, InMemoryPolicyStore


def wait_for(predicate, timeout=2.0):
    """Poll until ``predicate`` is truthy or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(0.02)
    return predicate()


class TestPolicyDecisionService:
    """Test cases for PolicyDecisionService."""

    @pytest.fixture
    def service(self):
        """Create PolicyDecisionService instance."""
        return PolicyDecisionService(
            get_config("policy", 8011, log_json=False),
            policy_store=InMemoryPolicyStore(),
            log_store=InMemoryDecisionLogStore()
        )

    @pytest.fixture
    def client(self, service):
        """Create test client with the lifespan running."""
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def policy_request(self):
        """Policy creation request."""
        return {
            "policy_id": "ALLOW_ANALYSTS",
            "name": "Allow analysts",
            "description": "Analysts may read reports",
            "scope": "tenant",
            "effect": "ALLOW",
            "priority": 100,
            "subject_attributes": [{"attribute": "role", "operator": "equals", "value": "analyst"}],
            "action_attributes": [{"attribute": "action", "operator": "in", "value": ["read", "list"]}],
        }

    @pytest.fixture
    def analyst_context(self):
        """Evaluation context for an analyst reading a report."""
        return {
            "subject": {"id": "user-1", "role": "analyst", "tenant_id": "T1"},
            "action": {"action": "read"},
            "resource": {"resource_type": "report", "tenant_id": "T1"},
            "environment": {"business_hours": True},
        }

    def test_create_app(self):
        """Test the application factory."""
        app = create_app(get_config("policy", 8011, log_json=False))

        assert any(route.path == "/abac/evaluate" for route in app.routes)

    def test_health(self, client):
        """Test health endpoint reports stores and cache."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"]["policy_store"] == "ok"

    def test_create_and_get_policy(self, client, policy_request):
        """Test policy creation records the actor."""
        response = client.post("/abac/policies", json=policy_request, headers={"X-Actor-ID": "admin-1"})

        assert response.status_code == 201
        created = response.json()
        assert created["version"] == 1
        assert created["created_by"] == "admin-1"
        assert created["action_attributes"][0]["value"] == ["read", "list"]

        response = client.get("/abac/policies/allow_analysts")
        assert response.status_code == 200
        assert response.json()["policy_id"] == "ALLOW_ANALYSTS"

    def test_create_duplicate(self, client, policy_request):
        """Test duplicate policy IDs return 409."""
        client.post("/abac/policies", json=policy_request)

        response = client.post("/abac/policies", json=policy_request)

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_KEY"

    def test_create_invalid_operator(self, client, policy_request):
        """Test unknown operators return 400."""
        policy_request["subject_attributes"] = [{"attribute": "role", "operator": "like", "value": "a"}]

        response = client.post("/abac/policies", json=policy_request)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_create_priority_out_of_range(self, client, policy_request):
        """Test request schema bounds priority."""
        policy_request["priority"] = 0

        response = client.post("/abac/policies", json=policy_request)

        assert response.status_code == 422

    def test_get_missing_policy(self, client):
        """Test missing policies return 404."""
        response = client.get("/abac/policies/MISSING")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_update_policy_and_conflict(self, client, policy_request):
        """Test optimistic concurrency on update."""
        client.post("/abac/policies", json=policy_request)

        response = client.put(
            "/abac/policies/ALLOW_ANALYSTS",
            json={"expected_version": 1, "priority": 200},
            headers={"X-Actor-ID": "admin-2"}
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["last_modified_by"] == "admin-2"

        response = client.put("/abac/policies/ALLOW_ANALYSTS", json={"expected_version": 1, "priority": 300})
        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_update_requires_expected_version(self, client, policy_request):
        """Test expected_version is mandatory."""
        client.post("/abac/policies", json=policy_request)

        response = client.put("/abac/policies/ALLOW_ANALYSTS", json={"priority": 300})

        assert response.status_code == 422

    def test_list_policies(self, client, policy_request):
        """Test listing with filters."""
        client.post("/abac/policies", json=policy_request)
        client.post("/abac/core-policies/TENANT_ISOLATION/initialize")

        response = client.get("/abac/policies")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["policies"][0]["policy_id"] == "TENANT_ISOLATION"

        response = client.get("/abac/policies", params={"category": "tenant_isolation"})
        assert [p["policy_id"] for p in response.json()["policies"]] == ["TENANT_ISOLATION"]

    def test_evaluate(self, client, policy_request, analyst_context):
        """Test evaluation before and after a policy exists."""
        response = client.post("/abac/evaluate", json=analyst_context)
        assert response.status_code == 200
        assert response.json()["result"] == "DENY"
        assert response.json()["reason"] == "no applicable policy"

        client.post("/abac/policies", json=policy_request)

        response = client.post("/abac/evaluate", json=analyst_context)
        data = response.json()
        assert data["result"] == "ALLOW"
        assert data["controlling_policy_id"] == "ALLOW_ANALYSTS"
        assert data["applied_policies"][0]["controlling"] is True

    def test_evaluate_invalid_context(self, client):
        """Test a missing attribute group returns 400."""
        response = client.post("/abac/evaluate", json={"subject": {}, "action": {}})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CONTEXT"
        assert response.json()["details"]["missing"] == ["resource", "environment"]

    def test_authorize(self, client, policy_request, analyst_context):
        """Test authorize returns 403 on DENY and 200 on ALLOW."""
        response = client.post("/abac/authorize", json=analyst_context)
        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

        client.post("/abac/policies", json=policy_request)

        response = client.post("/abac/authorize", json=analyst_context)
        assert response.status_code == 200

    def test_toggle_policy(self, client, policy_request, analyst_context):
        """Test a toggled-off policy no longer applies."""
        client.post("/abac/policies", json=policy_request)

        response = client.post("/abac/policies/ALLOW_ANALYSTS/toggle", json={"expected_version": 1})
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        response = client.post("/abac/evaluate", json=analyst_context)
        assert response.json()["result"] == "DENY"

    def test_delete_policy(self, client, policy_request):
        """Test deleting a custom policy."""
        client.post("/abac/policies", json=policy_request)

        response = client.delete("/abac/policies/ALLOW_ANALYSTS")
        assert response.status_code == 204

        assert client.get("/abac/policies/ALLOW_ANALYSTS").status_code == 404

    def test_delete_core_policy_forbidden(self, client):
        """Test core policies cannot be deleted."""
        client.post("/abac/core-policies/TENANT_ISOLATION/initialize")

        response = client.delete("/abac/policies/TENANT_ISOLATION")

        assert response.status_code == 403
        assert response.json()["code"] == "PROTECTED_POLICY"

    def test_initialize_core_policies(self, client):
        """Test initializing all core policies twice is idempotent."""
        first = client.post("/abac/core-policies/initialize", headers={"X-Actor-ID": "admin-1"})
        second = client.post("/abac/core-policies/initialize")

        assert first.status_code == 200
        assert len(first.json()["policies"]) == 6
        assert first.json() == second.json()
        assert client.get("/abac/policies").json()["total"] == 6

    def test_initialize_unknown_core_policy(self, client):
        """Test unknown core policy IDs return 404."""
        response = client.post("/abac/core-policies/NOT_CORE/initialize")

        assert response.status_code == 404

    def test_refresh_cache(self, client):
        """Test the cache refresh endpoint."""
        response = client.post("/abac/cache/refresh")

        assert response.status_code == 200
        assert response.json()["cache"]["populated"] is True

    def test_audit_logs_and_statistics(self, client, analyst_context):
        """Test evaluations appear in audit logs and statistics."""
        client.post("/abac/evaluate", json=analyst_context)

        logs = wait_for(lambda: client.get("/abac/audit-logs").json()["total"] == 1 and
                        client.get("/abac/audit-logs").json())
        assert logs["logs"][0]["decision"] == "DENY"
        assert logs["logs"][0]["subject_id"] == "user-1"

        response = client.get("/abac/audit-logs", params={"decision": "allow"})
        assert response.json()["total"] == 0

        response = client.get("/abac/statistics", params={"time_range_hours": 1})
        assert response.status_code == 200
        stats = response.json()
        assert stats["time_range_hours"] == 1
        assert stats["overview"][0]["count"] == 1
        assert stats["recent_denials"][0]["reason"] == "no applicable policy"

    def test_metrics_endpoint(self, client, analyst_context):
        """Test decision metrics are exported."""
        client.post("/abac/evaluate", json=analyst_context)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'policy_decisions_total{decision="DENY"} 1.0' in response.text
