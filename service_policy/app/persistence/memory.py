"""
In-memory persistence for policies and decision logs.

Used for tests and single-process deployments. Writes are serialized by an
asyncio lock; version checks happen under that lock, so concurrent updates
of one policy yield one winner and ``ConflictError`` for the rest.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional

from shared.errors import ConflictError, DuplicateKeyError, NotFoundError
from shared.logging import get_logger
from ..rules.models import (
    AuditLogFilter, DecisionLogEntry, Page, Pagination, Policy, PolicyEffect,
    PolicyFilter, utcnow
)
from .base import DecisionLogStore, PolicyStore, apply_changes


class InMemoryPolicyStore(PolicyStore):
    """Dictionary-backed policy store."""

    name = "memory_policy_store"

    def __init__(self):
        self.logger = get_logger("policy.persistence.memory")
        self._policies: Dict[str, Policy] = {}
        self._lock = asyncio.Lock()

    async def create(self, policy: Policy) -> Policy:
        async with self._lock:
            if policy.policy_id in self._policies:
                raise DuplicateKeyError(policy.policy_id)
            self._policies[policy.policy_id] = policy
        self.logger.info("Policy created", policy_id=policy.policy_id, name=policy.name)
        return policy

    async def get(self, policy_id: str) -> Policy:
        policy = self._policies.get(policy_id.strip().upper())
        if policy is None:
            raise NotFoundError(policy_id)
        return policy

    async def update(
        self,
        policy_id: str,
        changes: Mapping[str, Any],
        expected_version: int,
        actor_id: Optional[str] = None
    ) -> Policy:
        policy_id = policy_id.strip().upper()
        async with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise NotFoundError(policy_id)
            if current.version != expected_version:
                raise ConflictError(policy_id, expected_version, current.version)
            updated = apply_changes(current, changes, actor_id)
            self._policies[policy_id] = updated
        self.logger.info("Policy updated", policy_id=policy_id, version=updated.version)
        return updated

    async def _delete(self, policy_id: str) -> None:
        async with self._lock:
            if self._policies.pop(policy_id, None) is None:
                raise NotFoundError(policy_id)
        self.logger.info("Policy deleted", policy_id=policy_id)

    async def toggle(
        self,
        policy_id: str,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Policy:
        policy_id = policy_id.strip().upper()
        async with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise NotFoundError(policy_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(policy_id, expected_version, current.version)
            updated = apply_changes(current, {"is_active": not current.is_active}, actor_id)
            self._policies[policy_id] = updated
        self.logger.info("Policy toggled", policy_id=policy_id, is_active=updated.is_active)
        return updated

    async def list(self, policy_filter: PolicyFilter, pagination: Pagination) -> Page[Policy]:
        matching = sorted(
            (p for p in self._policies.values() if policy_filter.matches(p)),
            key=lambda p: p.sort_key
        )
        items = matching[pagination.offset:pagination.offset + pagination.limit]
        return Page(items=items, total=len(matching), page=pagination.page, limit=pagination.limit)

    async def list_active(self) -> List[Policy]:
        return [p for p in self._policies.values() if p.is_active]

    async def increment_counters(
        self,
        policy_id: str,
        evaluations: int = 0,
        allows: int = 0,
        denies: int = 0
    ) -> None:
        if min(evaluations, allows, denies) < 0:
            raise ValueError("Counter increments must be non-negative")
        async with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                # Deleted since it was evaluated
                return
            self._policies[policy_id] = current.with_changes(
                evaluation_count=current.evaluation_count + evaluations,
                allow_count=current.allow_count + allows,
                deny_count=current.deny_count + denies
            )


class InMemoryDecisionLogStore(DecisionLogStore):
    """Bounded in-memory decision log, newest entries last."""

    name = "memory_decision_log_store"

    def __init__(self, max_entries: int = 100000):
        self._entries: Deque[DecisionLogEntry] = deque(maxlen=max_entries)

    async def append(self, entry: DecisionLogEntry) -> None:
        self._entries.append(entry)

    def _live(self) -> List[DecisionLogEntry]:
        now = utcnow()
        return [e for e in self._entries if e.expires_at is None or e.expires_at > now]

    async def list(self, log_filter: AuditLogFilter, pagination: Pagination) -> Page[DecisionLogEntry]:
        matching = [e for e in reversed(self._live()) if log_filter.matches(e)]
        items = matching[pagination.offset:pagination.offset + pagination.limit]
        return Page(items=items, total=len(matching), page=pagination.page, limit=pagination.limit)

    async def summarize(self, since: datetime) -> List[Dict[str, Any]]:
        groups: Dict[PolicyEffect, List[float]] = {}
        for entry in self._live():
            if entry.timestamp >= since:
                groups.setdefault(entry.decision, []).append(entry.evaluation_time_ms)
        return [
            {
                "decision": decision.value,
                "count": len(times),
                "avg_evaluation_time_ms": sum(times) / len(times),
            }
            for decision, times in sorted(groups.items(), key=lambda item: item[0].value)
        ]

    async def recent_denials(self, since: datetime, limit: int = 10) -> List[DecisionLogEntry]:
        denials = [
            e for e in reversed(self._live())
            if e.decision == PolicyEffect.DENY and e.timestamp >= since
        ]
        return denials[:limit]

    async def purge_expired(self) -> int:
        live = self._live()
        purged = len(self._entries) - len(live)
        if purged:
            self._entries = deque(live, maxlen=self._entries.maxlen)
        return purged
