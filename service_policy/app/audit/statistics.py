"""
Per-policy usage statistics.
"""

from datetime import timedelta
from typing import Any, Dict, List

from shared.logging import get_logger
from ..persistence.base import DecisionLogStore, PolicyStore
from ..rules.models import Decision, PolicyEffect, PolicyFilter, Pagination, Policy, utcnow
from .worker import AuditWorker, CounterIncrement


def _rate(count: int, total: int) -> float:
    return round(count / total * 100, 2) if total else 0.0


class StatisticsTracker:
    """Maintains policy counters and summarizes decision activity.

    Counters are updated through the audit worker, so they trail the
    decisions they describe until the queue drains.
    """

    def __init__(self, policy_store: PolicyStore, log_store: DecisionLogStore, worker: AuditWorker):
        self.policy_store = policy_store
        self.log_store = log_store
        self.worker = worker
        self.logger = get_logger("policy.statistics")

    @staticmethod
    def increments_for(decision: Decision) -> Dict[str, CounterIncrement]:
        """Counter deltas implied by one decision."""
        increments = {}
        for evaluation in decision.applied_policies:
            controlling = evaluation.policy_id == decision.controlling_policy_id
            increments[evaluation.policy_id] = CounterIncrement(
                evaluations=1,
                allows=1 if controlling and decision.result == PolicyEffect.ALLOW else 0,
                denies=1 if controlling and decision.result == PolicyEffect.DENY else 0
            )
        return increments

    def record(self, decision: Decision) -> bool:
        """Queue the counter updates for ``decision``."""
        return self.worker.submit_counters(self.increments_for(decision), decision.decision_id)

    async def _active_policies(self) -> List[Policy]:
        policies: List[Policy] = []
        page = 1
        while True:
            result = await self.policy_store.list(PolicyFilter(is_active=True), Pagination(page=page, limit=500))
            policies.extend(result.items)
            if page >= result.pages:
                return policies
            page += 1

    async def summarize(self, time_range_hours: int = 24, top_n: int = 10) -> Dict[str, Any]:
        """Summarize decisions over the last ``time_range_hours`` hours."""
        since = utcnow() - timedelta(hours=time_range_hours)

        overview = await self.log_store.summarize(since)

        policies = await self._active_policies()
        policies.sort(key=lambda p: (-p.evaluation_count, p.policy_id))
        top_policies = [
            {
                "policy_id": p.policy_id,
                "name": p.name,
                "effect": p.effect.value,
                "is_active": p.is_active,
                "evaluation_count": p.evaluation_count,
                "allow_count": p.allow_count,
                "deny_count": p.deny_count,
                "allow_rate": _rate(p.allow_count, p.evaluation_count),
                "deny_rate": _rate(p.deny_count, p.evaluation_count),
            }
            for p in policies[:top_n]
        ]

        denials = await self.log_store.recent_denials(since, limit=top_n)
        recent_denials = [
            {
                "decision_id": entry.decision_id,
                "controlling_policy_id": entry.controlling_policy_id,
                "reason": entry.reason,
                "subject_id": entry.subject_id,
                "action": entry.action_name,
                "resource_type": entry.resource_type,
                "timestamp": entry.timestamp,
            }
            for entry in denials
        ]

        return {
            "overview": overview,
            "top_policies": top_policies,
            "recent_denials": recent_denials,
            "time_range_hours": time_range_hours,
        }
