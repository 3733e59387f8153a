"""
Policy Decision Point engine.

``PolicyEngine`` ties together the policy store, the snapshot cache, the
pure matcher/combiner and the background audit worker. Evaluations never
raise for internal failures: they resolve to DENY with ``error`` set.
"""

import time
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from shared.config import BaseConfig
from shared.errors import DuplicateKeyError, StoreUnavailableError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .audit.statistics import StatisticsTracker
from .audit.worker import AuditWorker
from .cache.snapshot import PolicyCache
from .persistence.base import DecisionLogStore, PolicyStore, UPDATABLE_FIELDS
from .rules.combiner import NO_APPLICABLE_POLICY, decide
from .rules.core_policies import CORE_POLICY_IDS, build_core_policy
from .rules.models import (
    AuditLogFilter, Decision, DecisionLogEntry, EvaluationContext, Page,
    Pagination, Policy, PolicyEffect, PolicyFilter, utcnow
)


_CREATE_FIELDS = UPDATABLE_FIELDS | {"policy_id"}


class PolicyEngine:
    """Evaluates access requests and administers policies."""

    def __init__(
        self,
        policy_store: PolicyStore,
        log_store: DecisionLogStore,
        config: Optional[BaseConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or BaseConfig()
        self.policy_store = policy_store
        self.log_store = log_store
        self.metrics = metrics
        self.logger = get_logger("policy.engine")

        self.cache = PolicyCache(
            policy_store.list_active,
            timeout=self.config.store_timeout_seconds,
            metrics=metrics
        )
        self.audit_worker = AuditWorker(
            log_store,
            policy_store,
            max_queue_size=self.config.audit_queue_size,
            write_timeout=self.config.audit_write_timeout_seconds,
            drain_timeout=self.config.audit_drain_timeout_seconds,
            metrics=metrics
        )
        self.statistics = StatisticsTracker(policy_store, log_store, self.audit_worker)

        self.engine_stats = {
            "evaluations": 0,
            "allowed": 0,
            "denied": 0,
            "fail_closed": 0,
        }

    async def start(self):
        """Open stores, start the audit worker and warm the cache."""
        await self.policy_store.start()
        await self.log_store.start()
        await self.audit_worker.start()
        await self.purge_expired_logs()

        if self.config.initialize_core_policies:
            await self.initialize_core_policies(self.config.system_actor_id)

        try:
            await self.cache.refresh()
        except StoreUnavailableError as e:
            # Evaluations fail closed until a later refresh succeeds
            self.logger.warning("Initial cache load failed", error=e.message)

        self.logger.info("Policy engine started")

    async def stop(self):
        """Drain the audit queue and close stores."""
        await self.audit_worker.stop()
        await self.log_store.stop()
        await self.policy_store.stop()
        self.logger.info("Policy engine stopped", **self.engine_stats)

    # Evaluation

    async def evaluate(self, context: Union[EvaluationContext, Mapping[str, Any]]) -> Decision:
        """Decide ALLOW or DENY for ``context``.

        Raises InvalidContextError if an attribute group is missing. Every
        other failure yields DENY with ``error`` set.
        """
        context = EvaluationContext.from_value(context)
        start_time = time.perf_counter()

        try:
            snapshot = await self.cache.get_snapshot()
            decision = decide(snapshot.candidates(), context)
        except StoreUnavailableError as e:
            decision = self._fail_closed("policy store unavailable", "store_unavailable", e.message)
        except Exception as e:
            decision = self._fail_closed("evaluation error", "evaluation_error", str(e))

        duration = time.perf_counter() - start_time
        decision = replace(decision, evaluation_time_ms=round(duration * 1000, 3))

        self._record(context, decision, duration)
        return decision

    def _fail_closed(self, error: str, cause: str, detail: str) -> Decision:
        self.engine_stats["fail_closed"] += 1
        self.logger.error("Evaluation failed closed", cause=cause, error=detail)
        if self.metrics:
            self.metrics.increment_counter("policy_fail_closed_total", cause=cause)
        return Decision(result=PolicyEffect.DENY, reason=NO_APPLICABLE_POLICY, error=error)

    def _record(self, context: EvaluationContext, decision: Decision, duration: float):
        self.engine_stats["evaluations"] += 1
        self.engine_stats["allowed" if decision.allowed else "denied"] += 1
        if self.metrics:
            self.metrics.record_decision(decision.result.value, duration)

        self.logger.info(
            "Policy decision",
            decision_id=decision.decision_id,
            result=decision.result.value,
            controlling_policy_id=decision.controlling_policy_id,
            evaluation_time_ms=decision.evaluation_time_ms,
            error=decision.error
        )

        try:
            expires_at = utcnow() + timedelta(days=self.config.decision_log_retention_days)
            self.audit_worker.submit_decision(
                DecisionLogEntry.from_decision(context, decision, expires_at)
            )
            self.statistics.record(decision)
        except Exception as e:
            self.logger.error(
                "Failed to queue decision audit",
                decision_id=decision.decision_id,
                error=str(e)
            )

    # Administration

    def _build_policy(self, data: Mapping[str, Any], actor_id: str) -> Policy:
        unknown = set(data) - _CREATE_FIELDS
        if unknown:
            raise ValidationError("Unknown or read-only policy fields", {"fields": sorted(unknown)})
        if not data.get("policy_id") or not data.get("name") or not data.get("effect"):
            raise ValidationError("policy_id, name and effect are required")

        fields = {key: value for key, value in data.items() if value is not None}
        return Policy(**fields, created_by=actor_id, last_modified_by=actor_id)

    async def _rebuild_cache(self):
        try:
            await self.cache.refresh()
        except StoreUnavailableError as e:
            self.logger.error("Cache rebuild after mutation failed", error=e.message)
            self.cache.invalidate()

    def _actor(self, actor_id: Optional[str]) -> str:
        return actor_id or self.config.system_actor_id

    async def create_policy(
        self,
        data: Union[Policy, Mapping[str, Any]],
        actor_id: Optional[str] = None
    ) -> Policy:
        """Create a policy. Raises DuplicateKeyError or ValidationError."""
        actor_id = self._actor(actor_id)
        if isinstance(data, Policy):
            policy = data.with_changes(
                version=1,
                evaluation_count=0,
                allow_count=0,
                deny_count=0,
                created_by=data.created_by or actor_id,
                last_modified_by=data.last_modified_by or actor_id
            )
        else:
            policy = self._build_policy(data, actor_id)

        created = await self.policy_store.create(policy)
        self.logger.info("Policy created", policy_id=created.policy_id, actor_id=actor_id)
        await self._rebuild_cache()
        return created

    async def update_policy(
        self,
        policy_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
        actor_id: Optional[str] = None
    ) -> Policy:
        """Apply ``patch`` if the policy is still at ``expected_version``."""
        actor_id = self._actor(actor_id)
        updated = await self.policy_store.update(policy_id, patch, expected_version, actor_id)
        self.logger.info(
            "Policy updated",
            policy_id=updated.policy_id,
            version=updated.version,
            actor_id=actor_id
        )
        await self._rebuild_cache()
        return updated

    async def delete_policy(self, policy_id: str, actor_id: Optional[str] = None) -> None:
        """Delete a non-core policy."""
        await self.policy_store.delete(policy_id)
        self.logger.info("Policy deleted", policy_id=policy_id, actor_id=self._actor(actor_id))
        await self._rebuild_cache()

    async def toggle_policy(
        self,
        policy_id: str,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Policy:
        """Flip a policy between active and inactive."""
        actor_id = self._actor(actor_id)
        toggled = await self.policy_store.toggle(policy_id, actor_id, expected_version)
        self.logger.info(
            "Policy toggled",
            policy_id=toggled.policy_id,
            is_active=toggled.is_active,
            actor_id=actor_id
        )
        await self._rebuild_cache()
        return toggled

    async def get_policy(self, policy_id: str) -> Policy:
        return await self.policy_store.get(policy_id)

    async def list_policies(
        self,
        policy_filter: Optional[PolicyFilter] = None,
        pagination: Optional[Pagination] = None
    ) -> Page[Policy]:
        return await self.policy_store.list(policy_filter or PolicyFilter(), pagination or Pagination())

    async def initialize_core_policy(self, policy_id: str, actor_id: Optional[str] = None) -> Policy:
        """Create a core policy from its template unless it already exists.

        Idempotent: an existing policy is returned unchanged. Raises
        NotFoundError for an ID that is not a core policy.
        """
        actor_id = self._actor(actor_id)
        policy = build_core_policy(policy_id, actor_id)

        try:
            created = await self.policy_store.create(policy)
        except DuplicateKeyError:
            return await self.policy_store.get(policy.policy_id)

        self.logger.info("Core policy initialized", policy_id=created.policy_id, actor_id=actor_id)
        await self._rebuild_cache()
        return created

    async def initialize_core_policies(self, actor_id: Optional[str] = None) -> List[Policy]:
        """Initialize every core policy."""
        return [
            await self.initialize_core_policy(policy_id, actor_id)
            for policy_id in sorted(CORE_POLICY_IDS)
        ]

    async def refresh_cache(self) -> Dict[str, Any]:
        """Rebuild the snapshot from the store. Raises StoreUnavailableError."""
        await self.cache.refresh()
        return self.cache.stats()

    # Audit

    async def list_audit_logs(
        self,
        log_filter: Optional[AuditLogFilter] = None,
        pagination: Optional[Pagination] = None
    ) -> Page[DecisionLogEntry]:
        return await self.log_store.list(log_filter or AuditLogFilter(), pagination or Pagination())

    async def get_statistics(self, time_range_hours: int = 24, top_n: Optional[int] = None) -> Dict[str, Any]:
        return await self.statistics.summarize(time_range_hours, top_n or self.config.statistics_top_n)

    async def purge_expired_logs(self) -> int:
        purged = await self.log_store.purge_expired()
        if purged:
            self.logger.info("Expired decision logs purged", count=purged)
        return purged

    async def flush(self, timeout: Optional[float] = None):
        """Wait for queued audit and counter jobs."""
        await self.audit_worker.flush(timeout)

    def get_engine_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        return {
            **self.engine_stats,
            "cache": self.cache.stats(),
            "audit": self.audit_worker.get_stats(),
        }
