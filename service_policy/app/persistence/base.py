"""
Storage interfaces for policies and decision logs.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from shared.errors import ProtectedPolicyError, ValidationError
from ..rules.core_policies import is_core_policy
from ..rules.models import (
    AttributeCategory, AuditLogFilter, DecisionLogEntry, Page, Pagination,
    Policy, PolicyFilter, build_predicates, utcnow
)


UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "scope",
    "category",
    "effect",
    "priority",
    "is_active",
    *(f"{c.value}_attributes" for c in AttributeCategory),
})


def apply_changes(policy: Policy, changes: Mapping[str, Any], actor_id: Optional[str]) -> Policy:
    """Return ``policy`` with ``changes`` applied and its version bumped by one."""
    if "policy_id" in changes and str(changes["policy_id"]).strip().upper() != policy.policy_id:
        raise ValidationError("policy_id cannot be changed", {"policy_id": policy.policy_id})

    unknown = set(changes) - UPDATABLE_FIELDS - {"policy_id"}
    if unknown:
        raise ValidationError(
            "Unknown or read-only policy fields",
            {"policy_id": policy.policy_id, "fields": sorted(unknown)}
        )

    updates: Dict[str, Any] = {
        key: value for key, value in changes.items()
        if key in UPDATABLE_FIELDS and value is not None
    }
    for category in AttributeCategory:
        key = f"{category.value}_attributes"
        if key in updates:
            updates[key] = build_predicates(updates[key])

    return policy.with_changes(
        **updates,
        version=policy.version + 1,
        last_modified_by=actor_id or policy.last_modified_by,
        updated_at=utcnow()
    )


class PolicyStore(ABC):
    """Durable, versioned collection of policies."""

    name = "policy_store"

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Close connections. No-op by default."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def create(self, policy: Policy) -> Policy:
        """Insert a new policy. Raises DuplicateKeyError."""

    @abstractmethod
    async def get(self, policy_id: str) -> Policy:
        """Fetch a policy. Raises NotFoundError."""

    @abstractmethod
    async def update(
        self,
        policy_id: str,
        changes: Mapping[str, Any],
        expected_version: int,
        actor_id: Optional[str] = None
    ) -> Policy:
        """Apply ``changes`` if the stored version equals ``expected_version``.

        Raises NotFoundError, ConflictError or ValidationError.
        """

    async def delete(self, policy_id: str) -> None:
        """Delete a non-core policy. Raises ProtectedPolicyError or NotFoundError."""
        if is_core_policy(policy_id):
            raise ProtectedPolicyError(policy_id.strip().upper())
        await self._delete(policy_id.strip().upper())

    @abstractmethod
    async def _delete(self, policy_id: str) -> None:
        """Delete a policy known not to be protected."""

    @abstractmethod
    async def toggle(
        self,
        policy_id: str,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Policy:
        """Flip ``is_active`` and bump the version."""

    @abstractmethod
    async def list(self, policy_filter: PolicyFilter, pagination: Pagination) -> Page[Policy]:
        """List policies by priority descending, then policy_id."""

    @abstractmethod
    async def list_active(self) -> List[Policy]:
        """All active policies; source of the cache snapshot."""

    @abstractmethod
    async def increment_counters(
        self,
        policy_id: str,
        evaluations: int = 0,
        allows: int = 0,
        denies: int = 0
    ) -> None:
        """Add to usage counters without touching the version."""


class DecisionLogStore(ABC):
    """Append-only store of decision log entries."""

    name = "decision_log_store"

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Close connections. No-op by default."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def append(self, entry: DecisionLogEntry) -> None:
        """Persist one entry."""

    @abstractmethod
    async def list(self, log_filter: AuditLogFilter, pagination: Pagination) -> Page[DecisionLogEntry]:
        """List entries, newest first."""

    @abstractmethod
    async def summarize(self, since: datetime) -> List[Dict[str, Any]]:
        """Per-decision ``count`` and ``avg_evaluation_time_ms`` since ``since``."""

    @abstractmethod
    async def recent_denials(self, since: datetime, limit: int = 10) -> List[DecisionLogEntry]:
        """Newest DENY entries since ``since``."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Remove entries past their retention; returns how many."""
