"""
Unit tests for the policy snapshot cache.
"""

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from shared.errors import StoreUnavailableError
from shared.metrics import MetricsCollector
from service_policy.app.cache.snapshot import PolicyCache, PolicySnapshot
from service_policy.app.rules.models import Policy, PolicyScope


def make_policy(policy_id, scope="tenant", priority=100, category="CUSTOM", is_active=True):
    return Policy(
        policy_id=policy_id,
        name=policy_id,
        effect="ALLOW",
        scope=scope,
        priority=priority,
        category=category,
        is_active=is_active
    )


class TestPolicySnapshot:
    """Test cases for PolicySnapshot."""

    @pytest.fixture
    def snapshot(self):
        """Create a snapshot with one policy per scope."""
        return PolicySnapshot.build([
            make_policy("PLATFORM_P", scope="platform", priority=10),
            make_policy("TENANT_P", scope="tenant", priority=20, category="tenant_isolation"),
            make_policy("RESOURCE_P", scope="resource", priority=30),
            make_policy("INACTIVE_P", scope="platform", is_active=False),
        ], generation=7)

    def test_inactive_policies_excluded(self, snapshot):
        """Test only active policies are cached."""
        assert snapshot.size == 3
        assert "INACTIVE_P" not in [p.policy_id for p in snapshot.candidates()]

    def test_candidates_include_every_scope(self, snapshot):
        """Test candidates hold every active policy in evaluation order."""
        ids = [p.policy_id for p in snapshot.candidates()]

        assert ids == ["RESOURCE_P", "TENANT_P", "PLATFORM_P"]

    def test_buckets(self, snapshot):
        """Test policies are bucketed by scope and category."""
        bucket = snapshot.bucket(PolicyScope.TENANT, "tenant_isolation")

        assert [p.policy_id for p in bucket] == ["TENANT_P"]
        assert snapshot.bucket(PolicyScope.PLATFORM, "MISSING") == ()
        assert snapshot.generation == 7


class TestPolicyCache:
    """Test cases for PolicyCache."""

    @pytest.fixture
    def metrics(self):
        """Create a metrics collector on a private registry."""
        return MetricsCollector("policy-test", CollectorRegistry())

    @pytest.mark.asyncio
    async def test_lazy_population(self):
        """Test the first read loads the snapshot once."""
        calls = []

        async def loader():
            calls.append(1)
            return [make_policy("P1")]

        cache = PolicyCache(loader)
        assert cache.current is None

        first = await cache.get_snapshot()
        second = await cache.get_snapshot()

        assert first is second
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_reads_load_once(self):
        """Test concurrent cold reads share one load."""
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return [make_policy("P1")]

        cache = PolicyCache(loader)
        snapshots = await asyncio.gather(*(cache.get_snapshot() for _ in range(5)))

        assert len(calls) == 1
        assert len({id(s) for s in snapshots}) == 1

    @pytest.mark.asyncio
    async def test_refresh_swaps_snapshot(self):
        """Test refresh replaces the snapshot with a new generation."""
        policies = [make_policy("P1")]

        async def loader():
            return list(policies)

        cache = PolicyCache(loader)
        old = await cache.get_snapshot()
        policies.append(make_policy("P2"))
        new = await cache.refresh()

        assert cache.current is new
        assert new.generation == old.generation + 1
        assert old.size == 1
        assert new.size == 2

    @pytest.mark.asyncio
    async def test_load_failure_raises_store_unavailable(self, metrics):
        """Test loader errors become StoreUnavailableError."""
        async def loader():
            raise ConnectionError("database down")

        cache = PolicyCache(loader, metrics=metrics)

        with pytest.raises(StoreUnavailableError):
            await cache.get_snapshot()

        assert cache.current is None
        assert cache.stats()["failures"] == 1
        failures = metrics.registry.get_sample_value("policy_cache_refresh_total", {"status": "failure"})
        assert failures == 1.0

    @pytest.mark.asyncio
    async def test_load_timeout(self):
        """Test slow loads are bounded by the timeout."""
        async def loader():
            await asyncio.sleep(1)
            return []

        cache = PolicyCache(loader, timeout=0.01)

        with pytest.raises(StoreUnavailableError):
            await cache.refresh()

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        """Test a failed rebuild leaves readers on the old snapshot."""
        fail = False

        async def loader():
            if fail:
                raise ConnectionError("database down")
            return [make_policy("P1")]

        cache = PolicyCache(loader)
        snapshot = await cache.get_snapshot()
        fail = True

        with pytest.raises(StoreUnavailableError):
            await cache.refresh()

        assert cache.current is snapshot

    @pytest.mark.asyncio
    async def test_invalidate(self, metrics):
        """Test invalidation forces a reload."""
        async def loader():
            return [make_policy("P1")]

        cache = PolicyCache(loader, metrics=metrics)
        await cache.get_snapshot()
        cache.invalidate()

        assert cache.current is None
        assert (await cache.get_snapshot()).size == 1
        assert metrics.registry.get_sample_value("policy_cache_size") == 1.0
