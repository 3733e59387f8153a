"""
PostgreSQL persistence layer for the Policy Decision Point.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import asyncpg

from shared.errors import (
    AccessLayerException, ConflictError, DuplicateKeyError, NotFoundError,
    StoreUnavailableError
)
from shared.logging import get_logger
from ..rules.models import (
    AttributeCategory, AuditLogFilter, DecisionLogEntry, Page, Pagination,
    Policy, PolicyEffect, PolicyEvaluation, PolicyFilter
)
from .base import DecisionLogStore, PolicyStore, apply_changes


_POLICY_COLUMNS = (
    "policy_id, name, description, scope, category, effect, priority, "
    "subject_attributes, action_attributes, resource_attributes, environment_attributes, "
    "is_active, version, evaluation_count, allow_count, deny_count, "
    "created_by, last_modified_by, created_at, updated_at"
)


async def _init_connection(conn):
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema="pg_catalog"
    )


class PostgreSQLPersistence:
    """Connection pool and schema shared by the PostgreSQL stores."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("policy.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
                init=_init_connection
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @asynccontextmanager
    async def connection(self, store: str):
        """Acquire a connection; driver and network failures become StoreUnavailableError."""
        if self.pool is None:
            raise StoreUnavailableError(store, "Connection pool not started")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except AccessLayerException:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("PostgreSQL operation failed", store=store, error=str(e))
            raise StoreUnavailableError(store, str(e))

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS abac_policies (
                    policy_id VARCHAR(255) PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    scope VARCHAR(20) NOT NULL,
                    category VARCHAR(100) NOT NULL,
                    effect VARCHAR(10) NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 100,
                    subject_attributes JSONB NOT NULL DEFAULT '[]',
                    action_attributes JSONB NOT NULL DEFAULT '[]',
                    resource_attributes JSONB NOT NULL DEFAULT '[]',
                    environment_attributes JSONB NOT NULL DEFAULT '[]',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    version INTEGER NOT NULL DEFAULT 1,
                    evaluation_count BIGINT NOT NULL DEFAULT 0,
                    allow_count BIGINT NOT NULL DEFAULT 0,
                    deny_count BIGINT NOT NULL DEFAULT 0,
                    created_by VARCHAR(255),
                    last_modified_by VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS abac_decision_logs (
                    decision_id UUID PRIMARY KEY,
                    decision VARCHAR(10) NOT NULL,
                    reason TEXT NOT NULL,
                    subject_attributes JSONB NOT NULL,
                    action_attributes JSONB NOT NULL,
                    resource_attributes JSONB NOT NULL,
                    environment_attributes JSONB NOT NULL,
                    considered_policies JSONB NOT NULL DEFAULT '[]',
                    considered_policy_ids TEXT[] NOT NULL DEFAULT '{}',
                    controlling_policy_id VARCHAR(255),
                    evaluation_time_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
                    error TEXT,
                    timestamp TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_abac_policies_active ON abac_policies(is_active);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_abac_policies_order ON abac_policies(priority DESC, policy_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_abac_logs_timestamp ON abac_decision_logs(timestamp DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_abac_logs_decision ON abac_decision_logs(decision);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_abac_logs_expires ON abac_decision_logs(expires_at);
            """)

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False


def _row_to_policy(row) -> Policy:
    """Convert database row to Policy object."""
    return Policy(
        policy_id=row["policy_id"],
        name=row["name"],
        description=row["description"],
        scope=row["scope"],
        category=row["category"],
        effect=row["effect"],
        priority=row["priority"],
        subject_attributes=row["subject_attributes"],
        action_attributes=row["action_attributes"],
        resource_attributes=row["resource_attributes"],
        environment_attributes=row["environment_attributes"],
        is_active=row["is_active"],
        version=row["version"],
        evaluation_count=row["evaluation_count"],
        allow_count=row["allow_count"],
        deny_count=row["deny_count"],
        created_by=row["created_by"],
        last_modified_by=row["last_modified_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"]
    )


def _policy_args(policy: Policy) -> List[Any]:
    return [
        policy.policy_id, policy.name, policy.description, policy.scope.value,
        policy.category, policy.effect.value, policy.priority,
        *[[p.to_dict() for p in policy.predicates(c)] for c in AttributeCategory],
        policy.is_active, policy.version, policy.evaluation_count,
        policy.allow_count, policy.deny_count, policy.created_by,
        policy.last_modified_by, policy.created_at, policy.updated_at
    ]


class PostgreSQLPolicyStore(PolicyStore):
    """Policy store backed by the ``abac_policies`` table."""

    name = "postgres_policy_store"

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence
        self.logger = get_logger("policy.persistence.postgres")

    async def start(self):
        await self.persistence.start()

    async def stop(self):
        await self.persistence.stop()

    async def health_check(self) -> bool:
        return await self.persistence.health_check()

    async def create(self, policy: Policy) -> Policy:
        async with self.persistence.connection(self.name) as conn:
            try:
                await conn.execute(
                    f"INSERT INTO abac_policies ({_POLICY_COLUMNS}) VALUES "
                    "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20)",
                    *_policy_args(policy)
                )
            except asyncpg.UniqueViolationError:
                raise DuplicateKeyError(policy.policy_id)

        self.logger.info("Policy created", policy_id=policy.policy_id, name=policy.name)
        return policy

    async def get(self, policy_id: str) -> Policy:
        async with self.persistence.connection(self.name) as conn:
            row = await conn.fetchrow(
                f"SELECT {_POLICY_COLUMNS} FROM abac_policies WHERE policy_id = $1",
                policy_id.strip().upper()
            )
        if not row:
            raise NotFoundError(policy_id)
        return _row_to_policy(row)

    async def _replace(self, conn, updated: Policy, expected_version: int) -> None:
        result = await conn.execute(
            """
            UPDATE abac_policies SET
                name = $2, description = $3, scope = $4, category = $5, effect = $6,
                priority = $7, subject_attributes = $8, action_attributes = $9,
                resource_attributes = $10, environment_attributes = $11, is_active = $12,
                version = $13, last_modified_by = $14, updated_at = $15
            WHERE policy_id = $1 AND version = $16
            """,
            updated.policy_id, updated.name, updated.description, updated.scope.value,
            updated.category, updated.effect.value, updated.priority,
            *[[p.to_dict() for p in updated.predicates(c)] for c in AttributeCategory],
            updated.is_active, updated.version, updated.last_modified_by,
            updated.updated_at, expected_version
        )
        if result != "UPDATE 1":
            raise ConflictError(updated.policy_id, expected_version)

    async def _locked_current(self, conn, policy_id: str) -> Policy:
        row = await conn.fetchrow(
            f"SELECT {_POLICY_COLUMNS} FROM abac_policies WHERE policy_id = $1 FOR UPDATE",
            policy_id
        )
        if not row:
            raise NotFoundError(policy_id)
        return _row_to_policy(row)

    async def update(
        self,
        policy_id: str,
        changes: Mapping[str, Any],
        expected_version: int,
        actor_id: Optional[str] = None
    ) -> Policy:
        policy_id = policy_id.strip().upper()
        async with self.persistence.connection(self.name) as conn:
            async with conn.transaction():
                current = await self._locked_current(conn, policy_id)
                if current.version != expected_version:
                    raise ConflictError(policy_id, expected_version, current.version)
                updated = apply_changes(current, changes, actor_id)
                await self._replace(conn, updated, expected_version)

        self.logger.info("Policy updated", policy_id=policy_id, version=updated.version)
        return updated

    async def _delete(self, policy_id: str) -> None:
        async with self.persistence.connection(self.name) as conn:
            result = await conn.execute("DELETE FROM abac_policies WHERE policy_id = $1", policy_id)

        if result != "DELETE 1":
            raise NotFoundError(policy_id)
        self.logger.info("Policy deleted", policy_id=policy_id)

    async def toggle(
        self,
        policy_id: str,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Policy:
        policy_id = policy_id.strip().upper()
        async with self.persistence.connection(self.name) as conn:
            async with conn.transaction():
                current = await self._locked_current(conn, policy_id)
                if expected_version is not None and current.version != expected_version:
                    raise ConflictError(policy_id, expected_version, current.version)
                updated = apply_changes(current, {"is_active": not current.is_active}, actor_id)
                await self._replace(conn, updated, current.version)

        self.logger.info("Policy toggled", policy_id=policy_id, is_active=updated.is_active)
        return updated

    async def list(self, policy_filter: PolicyFilter, pagination: Pagination) -> Page[Policy]:
        clauses, args = [], []
        if policy_filter.scope is not None:
            args.append(policy_filter.scope.value)
            clauses.append(f"scope = ${len(args)}")
        if policy_filter.category is not None:
            args.append(policy_filter.category.upper())
            clauses.append(f"category = ${len(args)}")
        if policy_filter.is_active is not None:
            args.append(policy_filter.is_active)
            clauses.append(f"is_active = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.persistence.connection(self.name) as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM abac_policies {where}", *args)
            rows = await conn.fetch(
                f"SELECT {_POLICY_COLUMNS} FROM abac_policies {where} "
                f"ORDER BY priority DESC, policy_id ASC LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                *args, pagination.limit, pagination.offset
            )

        return Page(
            items=[_row_to_policy(row) for row in rows],
            total=total or 0,
            page=pagination.page,
            limit=pagination.limit
        )

    async def list_active(self) -> List[Policy]:
        async with self.persistence.connection(self.name) as conn:
            rows = await conn.fetch(
                f"SELECT {_POLICY_COLUMNS} FROM abac_policies WHERE is_active = TRUE "
                "ORDER BY priority DESC, policy_id ASC"
            )
        return [_row_to_policy(row) for row in rows]

    async def increment_counters(
        self,
        policy_id: str,
        evaluations: int = 0,
        allows: int = 0,
        denies: int = 0
    ) -> None:
        if min(evaluations, allows, denies) < 0:
            raise ValueError("Counter increments must be non-negative")
        async with self.persistence.connection(self.name) as conn:
            await conn.execute(
                """
                UPDATE abac_policies SET
                    evaluation_count = evaluation_count + $2,
                    allow_count = allow_count + $3,
                    deny_count = deny_count + $4
                WHERE policy_id = $1
                """,
                policy_id, evaluations, allows, denies
            )


def _row_to_entry(row) -> DecisionLogEntry:
    return DecisionLogEntry(
        decision_id=str(row["decision_id"]),
        decision=PolicyEffect(row["decision"]),
        reason=row["reason"],
        subject_attributes=row["subject_attributes"],
        action_attributes=row["action_attributes"],
        resource_attributes=row["resource_attributes"],
        environment_attributes=row["environment_attributes"],
        considered_policies=tuple(
            PolicyEvaluation(
                policy_id=p["policy_id"],
                policy_name=p["policy_name"],
                effect=PolicyEffect(p["effect"]),
                priority=p["priority"],
                matched=p["matched"],
                reason=p["reason"],
                controlling=p.get("controlling", False)
            )
            for p in row["considered_policies"]
        ),
        controlling_policy_id=row["controlling_policy_id"],
        evaluation_time_ms=row["evaluation_time_ms"],
        error=row["error"],
        timestamp=row["timestamp"],
        expires_at=row["expires_at"]
    )


class PostgreSQLDecisionLogStore(DecisionLogStore):
    """Decision log backed by the ``abac_decision_logs`` table."""

    name = "postgres_decision_log_store"

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence

    async def start(self):
        await self.persistence.start()

    async def stop(self):
        await self.persistence.stop()

    async def health_check(self) -> bool:
        return await self.persistence.health_check()

    async def append(self, entry: DecisionLogEntry) -> None:
        async with self.persistence.connection(self.name) as conn:
            await conn.execute(
                """
                INSERT INTO abac_decision_logs (
                    decision_id, decision, reason, subject_attributes, action_attributes,
                    resource_attributes, environment_attributes, considered_policies,
                    considered_policy_ids, controlling_policy_id, evaluation_time_ms,
                    error, timestamp, expires_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (decision_id) DO NOTHING
                """,
                entry.decision_id, entry.decision.value, entry.reason,
                entry.subject_attributes, entry.action_attributes,
                entry.resource_attributes, entry.environment_attributes,
                [p.to_dict() for p in entry.considered_policies],
                [p.policy_id for p in entry.considered_policies],
                entry.controlling_policy_id, entry.evaluation_time_ms,
                entry.error, entry.timestamp, entry.expires_at
            )

    async def list(self, log_filter: AuditLogFilter, pagination: Pagination) -> Page[DecisionLogEntry]:
        clauses = ["(expires_at IS NULL OR expires_at > NOW())"]
        args: List[Any] = []

        def add(clause: str, value: Any):
            args.append(value)
            clauses.append(clause.format(f"${len(args)}"))

        if log_filter.decision is not None:
            add("decision = {}", PolicyEffect(log_filter.decision).value)
        if log_filter.policy_id is not None:
            add("{} = ANY(considered_policy_ids)", log_filter.policy_id.upper())
        if log_filter.subject_id is not None:
            add("subject_attributes->>'id' = {}", log_filter.subject_id)
        if log_filter.action is not None:
            add("action_attributes->>'action' = {}", log_filter.action)
        if log_filter.resource_type is not None:
            add("resource_attributes->>'resource_type' = {}", log_filter.resource_type)
        if log_filter.start is not None:
            add("timestamp >= {}", log_filter.start)
        if log_filter.end is not None:
            add("timestamp <= {}", log_filter.end)
        where = " AND ".join(clauses)

        async with self.persistence.connection(self.name) as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM abac_decision_logs WHERE {where}", *args)
            rows = await conn.fetch(
                f"SELECT * FROM abac_decision_logs WHERE {where} "
                f"ORDER BY timestamp DESC LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                *args, pagination.limit, pagination.offset
            )

        return Page(
            items=[_row_to_entry(row) for row in rows],
            total=total or 0,
            page=pagination.page,
            limit=pagination.limit
        )

    async def summarize(self, since: datetime) -> List[Dict[str, Any]]:
        async with self.persistence.connection(self.name) as conn:
            rows = await conn.fetch(
                """
                SELECT decision, COUNT(*) AS count, AVG(evaluation_time_ms) AS avg_evaluation_time_ms
                FROM abac_decision_logs
                WHERE timestamp >= $1 AND (expires_at IS NULL OR expires_at > NOW())
                GROUP BY decision
                ORDER BY decision
                """,
                since
            )
        return [
            {
                "decision": row["decision"],
                "count": row["count"],
                "avg_evaluation_time_ms": float(row["avg_evaluation_time_ms"] or 0.0),
            }
            for row in rows
        ]

    async def recent_denials(self, since: datetime, limit: int = 10) -> List[DecisionLogEntry]:
        async with self.persistence.connection(self.name) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM abac_decision_logs
                WHERE decision = 'DENY' AND timestamp >= $1
                    AND (expires_at IS NULL OR expires_at > NOW())
                ORDER BY timestamp DESC
                LIMIT $2
                """,
                since, limit
            )
        return [_row_to_entry(row) for row in rows]

    async def purge_expired(self) -> int:
        async with self.persistence.connection(self.name) as conn:
            result = await conn.execute(
                "DELETE FROM abac_decision_logs WHERE expires_at IS NOT NULL AND expires_at <= NOW()"
            )
        return int(result.split()[-1]) if result else 0
