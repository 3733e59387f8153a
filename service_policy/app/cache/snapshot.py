"""
Policy cache.

Evaluations read an immutable ``PolicySnapshot``. A rebuild loads the active
policies, builds a new snapshot and swaps the single reference held by
``PolicyCache``; readers never lock and never see a half-built snapshot.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.combiner import order_policies
from ..rules.models import Policy, PolicyScope


BucketKey = Tuple[PolicyScope, str]


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable view of the active policies."""
    generation: int
    buckets: Dict[BucketKey, Tuple[Policy, ...]]
    active: Tuple[Policy, ...]
    built_at: float = field(default_factory=time.time)

    @classmethod
    def build(cls, policies: Iterable[Policy], generation: int = 0) -> "PolicySnapshot":
        active = order_policies(p for p in policies if p.is_active)

        buckets: Dict[BucketKey, List[Policy]] = {}
        for policy in active:
            buckets.setdefault((policy.scope, policy.category), []).append(policy)

        return cls(
            generation=generation,
            buckets={key: tuple(items) for key, items in buckets.items()},
            active=tuple(active)
        )

    def candidates(self) -> Tuple[Policy, ...]:
        """Every active policy, already in evaluation order."""
        return self.active

    def bucket(self, scope: PolicyScope, category: str) -> Tuple[Policy, ...]:
        return self.buckets.get((PolicyScope(scope), category.upper()), ())

    @property
    def size(self) -> int:
        return len(self.active)


class PolicyCache:
    """Holds the current snapshot and rebuilds it from the policy store."""

    def __init__(
        self,
        loader: Callable[[], Awaitable[List[Policy]]],
        timeout: float = 2.0,
        metrics: Optional[MetricsCollector] = None
    ):
        self.loader = loader
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("policy.cache")

        self._snapshot: Optional[PolicySnapshot] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._stats = {"refreshes": 0, "failures": 0, "invalidations": 0}

    @property
    def current(self) -> Optional[PolicySnapshot]:
        return self._snapshot

    async def get_snapshot(self) -> PolicySnapshot:
        """Return the current snapshot, populating it on first use."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        return await self.refresh(only_if_empty=True)

    async def refresh(self, only_if_empty: bool = False) -> PolicySnapshot:
        """Rebuild the snapshot from the store.

        Raises StoreUnavailableError if the load fails or times out; the
        previous snapshot stays in place in that case.
        """
        async with self._lock:
            if only_if_empty and self._snapshot is not None:
                return self._snapshot

            try:
                policies = await asyncio.wait_for(self.loader(), timeout=self.timeout)
            except asyncio.TimeoutError:
                self._record_failure("timeout")
                raise StoreUnavailableError(
                    "policy_store",
                    f"Policy load timed out after {self.timeout}s"
                )
            except StoreUnavailableError:
                self._record_failure("unavailable")
                raise
            except Exception as e:
                self._record_failure(type(e).__name__)
                raise StoreUnavailableError("policy_store", str(e))

            self._generation += 1
            snapshot = PolicySnapshot.build(policies, self._generation)
            self._snapshot = snapshot

        self._stats["refreshes"] += 1
        if self.metrics:
            self.metrics.increment_counter("policy_cache_refresh_total", status="success")
            self.metrics.set_gauge("policy_cache_size", snapshot.size)
        self.logger.info(
            "Policy cache refreshed",
            generation=snapshot.generation,
            policies=snapshot.size
        )
        return snapshot

    def invalidate(self):
        """Drop the snapshot; the next read repopulates it."""
        self._snapshot = None
        self._stats["invalidations"] += 1
        self.logger.warning("Policy cache invalidated")

    def _record_failure(self, cause: str):
        self._stats["failures"] += 1
        if self.metrics:
            self.metrics.increment_counter("policy_cache_refresh_total", status="failure")
        self.logger.error("Policy cache refresh failed", cause=cause)

    def stats(self) -> Dict[str, object]:
        snapshot = self._snapshot
        return {
            **self._stats,
            "populated": snapshot is not None,
            "generation": snapshot.generation if snapshot else None,
            "policies": snapshot.size if snapshot else 0,
            "buckets": len(snapshot.buckets) if snapshot else 0,
        }
