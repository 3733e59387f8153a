"""
Policy Decision Point service.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Header, Query, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.logging import set_actor_context

from .engine import PolicyEngine
from .enforcement import require_allow
from .persistence.base import DecisionLogStore, PolicyStore
from .persistence.memory import InMemoryDecisionLogStore, InMemoryPolicyStore
from .rules.models import (
    AuditLogFilter, Decision, DecisionLogEntry, Pagination, Policy, PolicyFilter
)
from .schemas import (
    AuditLogListResponse, AuditLogResponse, DecisionResponse, EvaluationRequest,
    PolicyCreateRequest, PolicyListResponse, PolicyResponse, PolicyToggleRequest,
    PolicyUpdateRequest
)


def _policy_response(policy: Policy) -> PolicyResponse:
    return PolicyResponse(**policy.to_dict())


def _decision_response(decision: Decision) -> DecisionResponse:
    return DecisionResponse(**decision.to_dict())


def _log_response(entry: DecisionLogEntry) -> AuditLogResponse:
    return AuditLogResponse(**entry.to_dict())


def build_stores(config: ServiceConfig):
    """Create the policy and decision log stores for the configured backend."""
    if config.persistence_backend == "postgres":
        from .persistence.postgres import (
            PostgreSQLDecisionLogStore, PostgreSQLPersistence, PostgreSQLPolicyStore
        )
        persistence = PostgreSQLPersistence(
            config.postgres_dsn,
            min_size=config.postgres_pool_min_size,
            max_size=config.postgres_pool_max_size
        )
        return PostgreSQLPolicyStore(persistence), PostgreSQLDecisionLogStore(persistence)

    return InMemoryPolicyStore(), InMemoryDecisionLogStore()


class PolicyDecisionService(BaseService):
    """Policy Decision Point service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        policy_store: Optional[PolicyStore] = None,
        log_store: Optional[DecisionLogStore] = None
    ):
        super().__init__("policy", 8011, config or get_config("policy", 8011))

        if policy_store is None or log_store is None:
            default_policy_store, default_log_store = build_stores(self.config)
            policy_store = policy_store or default_policy_store
            log_store = log_store or default_log_store

        self.engine = PolicyEngine(policy_store, log_store, config=self.config, metrics=self.metrics)

        self._setup_policy_routes()

    def _setup_policy_routes(self):
        """Set up decision point routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "policy",
                "message": "Access Policy Decision Point",
                "version": "1.0.0",
                "capabilities": ["abac_evaluation", "policy_administration", "decision_audit"]
            }

        @self.app.post("/abac/evaluate", response_model=DecisionResponse)
        async def evaluate(request: EvaluationRequest):
            """Evaluate an access request."""
            decision = await self.engine.evaluate(request.model_dump(exclude_none=True))
            return _decision_response(decision)

        @self.app.post("/abac/authorize", response_model=DecisionResponse)
        async def authorize(request: EvaluationRequest):
            """Evaluate an access request; 403 unless it is allowed."""
            decision = await require_allow(self.engine, request.model_dump(exclude_none=True))
            return _decision_response(decision)

        @self.app.get("/abac/policies", response_model=PolicyListResponse)
        async def list_policies(
            scope: Optional[str] = Query(None, description="Filter by scope"),
            category: Optional[str] = Query(None, description="Filter by category"),
            is_active: Optional[bool] = Query(None, description="Filter by active flag"),
            page: int = Query(1, ge=1, description="Page number"),
            limit: int = Query(20, ge=1, le=500, description="Items per page")
        ):
            """List policies in evaluation order."""
            policy_filter = PolicyFilter(scope=scope, category=category, is_active=is_active)
            result = await self.engine.list_policies(policy_filter, Pagination(page=page, limit=limit))
            return PolicyListResponse(
                policies=[_policy_response(p) for p in result.items],
                total=result.total,
                page=result.page,
                limit=result.limit,
                pages=result.pages
            )

        @self.app.post("/abac/policies", response_model=PolicyResponse, status_code=201)
        async def create_policy(
            request: PolicyCreateRequest,
            x_actor_id: Optional[str] = Header(None)
        ):
            """Create a new policy."""
            set_actor_context(x_actor_id)
            policy = await self.engine.create_policy(request.model_dump(), x_actor_id)
            return _policy_response(policy)

        @self.app.get("/abac/policies/{policy_id}", response_model=PolicyResponse)
        async def get_policy(policy_id: str):
            """Get a specific policy."""
            return _policy_response(await self.engine.get_policy(policy_id))

        @self.app.put("/abac/policies/{policy_id}", response_model=PolicyResponse)
        async def update_policy(
            policy_id: str,
            request: PolicyUpdateRequest,
            x_actor_id: Optional[str] = Header(None)
        ):
            """Update a policy at a known version."""
            set_actor_context(x_actor_id)
            policy = await self.engine.update_policy(
                policy_id,
                request.changes(),
                request.expected_version,
                x_actor_id
            )
            return _policy_response(policy)

        @self.app.delete("/abac/policies/{policy_id}", status_code=204)
        async def delete_policy(policy_id: str, x_actor_id: Optional[str] = Header(None)):
            """Delete a policy. Core policies cannot be deleted."""
            set_actor_context(x_actor_id)
            await self.engine.delete_policy(policy_id, x_actor_id)
            return Response(status_code=204)

        @self.app.post("/abac/policies/{policy_id}/toggle", response_model=PolicyResponse)
        async def toggle_policy(
            policy_id: str,
            request: Optional[PolicyToggleRequest] = None,
            x_actor_id: Optional[str] = Header(None)
        ):
            """Activate or deactivate a policy."""
            set_actor_context(x_actor_id)
            expected_version = request.expected_version if request else None
            policy = await self.engine.toggle_policy(policy_id, x_actor_id, expected_version)
            return _policy_response(policy)

        @self.app.post("/abac/core-policies/initialize")
        async def initialize_core_policies(x_actor_id: Optional[str] = Header(None)):
            """Create every missing core policy."""
            set_actor_context(x_actor_id)
            policies = await self.engine.initialize_core_policies(x_actor_id)
            return {"policies": [_policy_response(p) for p in policies]}

        @self.app.post("/abac/core-policies/{policy_id}/initialize", response_model=PolicyResponse)
        async def initialize_core_policy(policy_id: str, x_actor_id: Optional[str] = Header(None)):
            """Create one core policy from its template if missing."""
            set_actor_context(x_actor_id)
            return _policy_response(await self.engine.initialize_core_policy(policy_id, x_actor_id))

        @self.app.post("/abac/cache/refresh")
        async def refresh_cache():
            """Rebuild the policy snapshot."""
            return {"status": "refreshed", "cache": await self.engine.refresh_cache()}

        @self.app.get("/abac/audit-logs", response_model=AuditLogListResponse)
        async def list_audit_logs(
            decision: Optional[str] = Query(None, description="ALLOW or DENY"),
            policy_id: Optional[str] = Query(None, description="Considered policy"),
            subject_id: Optional[str] = Query(None, description="Subject id attribute"),
            action: Optional[str] = Query(None, description="Action attribute"),
            resource_type: Optional[str] = Query(None, description="Resource type attribute"),
            start_date: Optional[datetime] = Query(None, description="Window start"),
            end_date: Optional[datetime] = Query(None, description="Window end"),
            page: int = Query(1, ge=1, description="Page number"),
            limit: int = Query(50, ge=1, le=500, description="Items per page")
        ):
            """List decision log entries, newest first."""
            log_filter = AuditLogFilter(
                decision=decision.upper() if decision else None,
                policy_id=policy_id,
                subject_id=subject_id,
                action=action,
                resource_type=resource_type,
                start=start_date,
                end=end_date
            )
            result = await self.engine.list_audit_logs(log_filter, Pagination(page=page, limit=limit))
            return AuditLogListResponse(
                logs=[_log_response(e) for e in result.items],
                total=result.total,
                page=result.page,
                limit=result.limit,
                pages=result.pages
            )

        @self.app.get("/abac/statistics")
        async def get_statistics(
            time_range_hours: int = Query(24, ge=1, le=720, description="Window in hours"),
            top_n: Optional[int] = Query(None, ge=1, le=100, description="Top policies to return")
        ) -> Dict[str, Any]:
            """Decision and policy usage statistics."""
            return await self.engine.get_statistics(time_range_hours, top_n)

        @self.app.get("/abac/engine/stats")
        async def get_engine_stats():
            """Engine, cache and audit queue statistics."""
            return self.engine.get_engine_stats()

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        dependencies = {}

        dependencies["policy_store"] = "ok" if await self.engine.policy_store.health_check() else "error"
        dependencies["decision_log_store"] = "ok" if await self.engine.log_store.health_check() else "error"
        dependencies["policy_cache"] = "ok" if self.engine.cache.current is not None else "cold"

        return dependencies

    async def start(self):
        """Start the service."""
        await self.engine.start()
        self.logger.info("Policy decision service started")

    async def stop(self):
        """Stop the service."""
        await self.engine.stop()
        self.logger.info("Policy decision service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create the FastAPI application."""
    service = PolicyDecisionService(config)
    return service.app


if __name__ == "__main__":
    service = PolicyDecisionService()
    service.run()
