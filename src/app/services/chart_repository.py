#!/usr/bin/env python3
"""
Artifact persistence.

One row per (tenant_id, client_id, artifact_type, system), with artifact
type and system compared case-insensitively; writes are upserts. Large payloads are stored compressed, transparently to callers.

Features:
- In-memory repository for development and tests
- PostgreSQL repository on an asyncpg connection pool
- Type listings for missing-artifact audits
"""

import copy
import json
import logging

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Optional

import asyncpg

from app.models.profile import Artifact
from app.utils.compression import (
    DEFAULT_THRESHOLD_BYTES,
    compress_payload,
    decompress_payload,
)

logger = logging.getLogger(__name__)


class ArtifactRepository(ABC):
    """Storage contract for computed artifacts"""

    @abstractmethod
    async def find_one(
        self, tenant_id: str, client_id: str, artifact_type: str, system: str
    ) -> Optional[Artifact]:
        pass

    @abstractmethod
    async def find_by_client(
        self,
        tenant_id: str,
        client_id: str,
        artifact_type: str | None = None,
        system: str | None = None,
    ) -> list[Artifact]:
        pass

    @abstractmethod
    async def list_types(self, tenant_id: str, client_id: str, system: str) -> list[str]:
        """Artifact types persisted for one client and system (no payloads)."""
        pass

    @abstractmethod
    async def upsert(self, artifact: Artifact) -> Artifact:
        pass


class InMemoryArtifactRepository(ArtifactRepository):
    """Dict-backed repository; payloads are compressed like the SQL store"""

    def __init__(self, compression_threshold: int = DEFAULT_THRESHOLD_BYTES):
        self._rows: dict[tuple[str, str, str, str], Artifact] = {}
        self.compression_threshold = compression_threshold
        self.reads = 0
        self.writes = 0

    @staticmethod
    def _key(tenant_id: str, client_id: str, artifact_type: str, system: str):
        return (tenant_id, client_id, artifact_type.lower(), system.lower())

    def _materialize(self, row: Artifact) -> Artifact:
        return Artifact(
            tenant_id=row.tenant_id,
            client_id=row.client_id,
            artifact_type=row.artifact_type,
            system=row.system,
            payload=decompress_payload(copy.deepcopy(row.payload)),
            calculated_at=row.calculated_at,
            updated_at=row.updated_at,
            metadata=dict(row.metadata),
        )

    async def find_one(self, tenant_id, client_id, artifact_type, system):
        self.reads += 1
        row = self._rows.get(self._key(tenant_id, client_id, artifact_type, system))
        return None if row is None else self._materialize(row)

    async def find_by_client(self, tenant_id, client_id, artifact_type=None, system=None):
        self.reads += 1
        rows = []
        for (t, c, a, s), row in self._rows.items():
            if t != tenant_id or c != client_id:
                continue
            if artifact_type is not None and a != artifact_type.lower():
                continue
            if system is not None and s != system.lower():
                continue
            rows.append(self._materialize(row))
        return rows

    async def list_types(self, tenant_id, client_id, system):
        self.reads += 1
        return [
            row.artifact_type
            for (t, c, _, s), row in self._rows.items()
            if t == tenant_id and c == client_id and s == system.lower()
        ]

    async def upsert(self, artifact: Artifact) -> Artifact:
        self.writes += 1
        now = datetime.now(UTC)
        key = self._key(*artifact.key)
        existing = self._rows.get(key)
        stored = Artifact(
            tenant_id=artifact.tenant_id,
            client_id=artifact.client_id,
            artifact_type=artifact.artifact_type if existing is None else existing.artifact_type,
            system=artifact.system.lower(),
            payload=compress_payload(artifact.payload, self.compression_threshold),
            calculated_at=artifact.calculated_at or now,
            updated_at=now,
            metadata=dict(artifact.metadata),
        )
        if existing is not None:
            stored.metadata = {**existing.metadata, **stored.metadata}
        self._rows[key] = stored
        return self._materialize(stored)


class PostgresArtifactRepository(ArtifactRepository):
    """
    asyncpg-backed repository.

    Expects a ``client_artifacts`` table with a unique index on
    (tenant_id, client_id, lower(artifact_type), system) and a JSONB payload
    column. Artifact types match case-insensitively; the first spelling
    written is kept.
    """

    TABLE = "client_artifacts"

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        compression_threshold: int = DEFAULT_THRESHOLD_BYTES,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.compression_threshold = compression_threshold
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize connection pool"""
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
            )
            logger.info(f"Artifact repository pool created: {self.min_size}-{self.max_size}")

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def get_connection(self):
        """Get database connection from pool"""
        if self.pool is None:
            await self.initialize()
        async with self.pool.acquire() as conn:
            yield conn

    def _row_to_artifact(self, row: Any) -> Artifact:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Artifact(
            tenant_id=row["tenant_id"],
            client_id=row["client_id"],
            artifact_type=row["artifact_type"],
            system=row["system"],
            payload=decompress_payload(payload),
            calculated_at=row["calculated_at"],
            updated_at=row["updated_at"],
            metadata=metadata or {},
        )

    async def find_one(self, tenant_id, client_id, artifact_type, system):
        query = f"""
            SELECT tenant_id, client_id, artifact_type, system, payload,
                   metadata, calculated_at, updated_at
            FROM {self.TABLE}
            WHERE tenant_id = $1 AND client_id = $2
              AND lower(artifact_type) = lower($3) AND system = lower($4)
        """
        async with self.get_connection() as conn:
            row = await conn.fetchrow(query, tenant_id, client_id, artifact_type, system)
        return None if row is None else self._row_to_artifact(row)

    async def find_by_client(self, tenant_id, client_id, artifact_type=None, system=None):
        query = f"""
            SELECT tenant_id, client_id, artifact_type, system, payload,
                   metadata, calculated_at, updated_at
            FROM {self.TABLE}
            WHERE tenant_id = $1 AND client_id = $2
              AND ($3::text IS NULL OR lower(artifact_type) = lower($3))
              AND ($4::text IS NULL OR system = lower($4))
            ORDER BY system, artifact_type
        """
        async with self.get_connection() as conn:
            rows = await conn.fetch(query, tenant_id, client_id, artifact_type, system)
        return [self._row_to_artifact(row) for row in rows]

    async def list_types(self, tenant_id, client_id, system):
        query = f"""
            SELECT artifact_type FROM {self.TABLE}
            WHERE tenant_id = $1 AND client_id = $2 AND system = lower($3)
        """
        async with self.get_connection() as conn:
            rows = await conn.fetch(query, tenant_id, client_id, system)
        return [row["artifact_type"] for row in rows]

    async def upsert(self, artifact: Artifact) -> Artifact:
        query = f"""
            INSERT INTO {self.TABLE}
                (tenant_id, client_id, artifact_type, system, payload, metadata,
                 calculated_at, updated_at)
            VALUES ($1, $2, $3, lower($4), $5::jsonb, $6::jsonb, $7, now())
            ON CONFLICT (tenant_id, client_id, lower(artifact_type), system) DO UPDATE SET
                payload = EXCLUDED.payload,
                metadata = {self.TABLE}.metadata || EXCLUDED.metadata,
                calculated_at = EXCLUDED.calculated_at,
                updated_at = now()
            RETURNING tenant_id, client_id, artifact_type, system, payload,
                      metadata, calculated_at, updated_at
        """
        payload = compress_payload(artifact.payload, self.compression_threshold)
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                query,
                artifact.tenant_id,
                artifact.client_id,
                artifact.artifact_type,
                artifact.system,
                json.dumps(payload),
                json.dumps(artifact.metadata),
                artifact.calculated_at or datetime.now(UTC),
            )
        return self._row_to_artifact(row)
