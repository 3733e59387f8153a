"""
Integration tests for the Policy Decision Point flow.
"""

import time

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_policy.app.main import PolicyDecisionService


class TestPolicyFlow:
    """End-to-end tests over the HTTP API with in-memory stores."""

    @pytest.fixture
    def client(self):
        """Start the service with core policies initialized."""
        config = get_config("policy", 8011, log_json=False, initialize_core_policies=True)
        service = PolicyDecisionService(config)
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def allow_members(self, client):
        """Wildcard ALLOW for tenant members."""
        response = client.post("/abac/policies", json={
            "policy_id": "TENANT_MEMBERS",
            "name": "Tenant members",
            "effect": "ALLOW",
            "priority": 10,
            "subject_attributes": [{"attribute": "tenant_id", "operator": "exists", "value": True}],
        }, headers={"X-Actor-ID": "admin-1"})
        assert response.status_code == 201
        return response.json()

    def evaluate(self, client, subject, action, resource, environment=None):
        response = client.post("/abac/evaluate", json={
            "subject": subject,
            "action": action,
            "resource": resource,
            "environment": environment or {"business_hours": True},
        })
        assert response.status_code == 200
        return response.json()

    def test_core_policies_loaded_on_start(self, client):
        """Test the six core policies exist after startup."""
        data = client.get("/abac/policies", params={"limit": 50}).json()

        assert data["total"] == 6
        assert [p["priority"] for p in data["policies"]] == [1000, 900, 800, 700, 600, 500]

    def test_same_tenant_allowed_cross_tenant_denied(self, client, allow_members):
        """Test tenant isolation overrides the member ALLOW."""
        subject = {"id": "user-1", "tenant_id": "T1"}

        same = self.evaluate(client, subject, {"action": "read"}, {"tenant_id": "T1"})
        cross = self.evaluate(client, subject, {"action": "read"}, {"tenant_id": "T2"})

        assert same["result"] == "ALLOW"
        assert same["controlling_policy_id"] == "TENANT_MEMBERS"
        assert cross["result"] == "DENY"
        assert cross["controlling_policy_id"] == "TENANT_ISOLATION"

    def test_scope_attribute_cannot_bypass_isolation(self, client, allow_members):
        """Test a platform scope attribute still hits tenant isolation."""
        decision = self.evaluate(
            client,
            {"id": "user-1", "tenant_id": "T1"},
            {"action": "read"},
            {"tenant_id": "T2", "scope": "platform"}
        )

        assert decision["result"] == "DENY"
        assert decision["controlling_policy_id"] == "TENANT_ISOLATION"

    def test_missing_resource_tenant_denied(self, client, allow_members):
        """Test a resource without a tenant is denied by tenant isolation."""
        decision = self.evaluate(client, {"id": "user-1", "tenant_id": "T1"}, {"action": "read"}, {})

        assert decision["result"] == "DENY"
        assert decision["controlling_policy_id"] == "TENANT_ISOLATION"

    def test_financial_approval_limit(self, client, allow_members):
        """Test approvals above the subject's limit are denied."""
        subject = {"id": "user-1", "tenant_id": "T1", "approval_limit": 1000}
        action = {"action": "approve"}

        within = self.evaluate(client, subject, action, {"tenant_id": "T1", "amount": 800})
        above = self.evaluate(client, subject, action, {"tenant_id": "T1", "amount": 5000})

        assert within["result"] == "ALLOW"
        assert above["result"] == "DENY"
        assert above["controlling_policy_id"] == "FINANCIAL_APPROVAL_LIMITS"

    def test_payouts_outside_business_hours(self, client, allow_members):
        """Test payout approvals are denied outside business hours."""
        decision = self.evaluate(
            client,
            {"id": "user-1", "tenant_id": "T1", "approval_limit": 10000},
            {"action": "approve"},
            {"tenant_id": "T1", "resource_type": "payout", "amount": 10},
            {"business_hours": False}
        )

        assert decision["result"] == "DENY"
        assert decision["controlling_policy_id"] == "BUSINESS_HOURS_PAYOUTS"

    def test_deactivated_core_policy_stops_applying(self, client, allow_members):
        """Test a core policy can be deactivated and reactivated but not deleted."""
        subject = {"id": "user-1", "tenant_id": "T1"}

        toggled = client.post("/abac/policies/TENANT_ISOLATION/toggle", headers={"X-Actor-ID": "admin-1"})
        assert toggled.json()["is_active"] is False
        assert client.delete("/abac/policies/TENANT_ISOLATION").status_code == 403

        cross = self.evaluate(client, subject, {"action": "read"}, {"tenant_id": "T2"})
        assert cross["result"] == "ALLOW"

        client.post("/abac/policies/TENANT_ISOLATION/toggle")
        cross = self.evaluate(client, subject, {"action": "read"}, {"tenant_id": "T2"})
        assert cross["result"] == "DENY"

    def test_counters_catch_up(self, client, allow_members):
        """Test policy counters eventually reflect every evaluation."""
        subject = {"id": "user-1", "tenant_id": "T1"}
        for _ in range(10):
            self.evaluate(client, subject, {"action": "read"}, {"tenant_id": "T1"})

        deadline = time.time() + 2
        policy = client.get("/abac/policies/TENANT_MEMBERS").json()
        while policy["evaluation_count"] < 10 and time.time() < deadline:
            time.sleep(0.02)
            policy = client.get("/abac/policies/TENANT_MEMBERS").json()

        assert policy["evaluation_count"] == 10
        assert policy["allow_count"] == 10
        assert policy["version"] == allow_members["version"]
