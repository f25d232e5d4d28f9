#!/usr/bin/env python3
"""
Client data provider and generation status store.

Exposes birth details for calculation and records the per-client
generation status with its monotonically increasing version counter.
"""

import logging

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Optional

import asyncpg

from app.models.profile import ClientRecord, GenerationStatus

logger = logging.getLogger(__name__)


class ClientRepository(ABC):
    """Client lookups plus generation status updates"""

    @abstractmethod
    async def get(self, tenant_id: str, client_id: str) -> Optional[ClientRecord]:
        pass

    @abstractmethod
    async def set_generation_status(
        self,
        tenant_id: str,
        client_id: str,
        status: GenerationStatus,
        bump_version: bool = False,
    ) -> None:
        pass

    @abstractmethod
    async def find_processing(
        self, older_than: datetime | None = None, limit: int = 100
    ) -> list[ClientRecord]:
        """Clients stuck in ``processing``, optionally only those last updated before ``older_than``."""
        pass


class InMemoryClientRepository(ClientRepository):
    def __init__(self, clients: list[ClientRecord] | None = None):
        self._clients: dict[tuple[str, str], ClientRecord] = {}
        self.status_history: list[tuple[str, GenerationStatus]] = []
        for client in clients or []:
            self.add(client)

    def add(self, client: ClientRecord) -> None:
        self._clients[(client.tenant_id, client.client_id)] = client

    async def get(self, tenant_id, client_id):
        return self._clients.get((tenant_id, client_id))

    async def set_generation_status(self, tenant_id, client_id, status, bump_version=False):
        client = self._clients.get((tenant_id, client_id))
        if client is None:
            return
        client.generation_status = status
        client.status_updated_at = datetime.now(UTC)
        if bump_version:
            client.generation_version += 1
        self.status_history.append((client_id, status))

    async def find_processing(self, older_than=None, limit=100):
        stuck = []
        for client in self._clients.values():
            if client.generation_status != GenerationStatus.PROCESSING:
                continue
            if older_than is not None and client.status_updated_at and client.status_updated_at >= older_than:
                continue
            stuck.append(client)
        return stuck[:limit]


class PostgresClientRepository(ClientRepository):
    """asyncpg-backed client provider over the ``clients`` table"""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_size, max_size=self.max_size, command_timeout=60
            )

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def get_connection(self):
        if self.pool is None:
            await self.initialize()
        async with self.pool.acquire() as conn:
            yield conn

    @staticmethod
    def _row_to_client(row: Any) -> ClientRecord:
        return ClientRecord(
            tenant_id=row["tenant_id"],
            client_id=row["id"],
            full_name=row["full_name"] or "",
            birth_date=row["birth_date"],
            birth_time=row["birth_time"],
            latitude=float(row["birth_latitude"]) if row["birth_latitude"] is not None else None,
            longitude=float(row["birth_longitude"]) if row["birth_longitude"] is not None else None,
            timezone=row["birth_timezone"],
            generation_status=GenerationStatus(row["generation_status"] or "idle"),
            generation_version=row["generation_version"] or 0,
            status_updated_at=row["generation_status_updated_at"],
        )

    _COLUMNS = """
        id, tenant_id, full_name, birth_date, birth_time, birth_latitude,
        birth_longitude, birth_timezone, generation_status, generation_version,
        generation_status_updated_at
    """

    async def get(self, tenant_id, client_id):
        query = f"SELECT {self._COLUMNS} FROM clients WHERE tenant_id = $1 AND id = $2"
        async with self.get_connection() as conn:
            row = await conn.fetchrow(query, tenant_id, client_id)
        return None if row is None else self._row_to_client(row)

    async def set_generation_status(self, tenant_id, client_id, status, bump_version=False):
        query = """
            UPDATE clients
            SET generation_status = $3,
                generation_version = generation_version + $4,
                generation_status_updated_at = now()
            WHERE tenant_id = $1 AND id = $2
        """
        async with self.get_connection() as conn:
            await conn.execute(query, tenant_id, client_id, status.value, 1 if bump_version else 0)

    async def find_processing(self, older_than=None, limit=100):
        query = f"""
            SELECT {self._COLUMNS} FROM clients
            WHERE generation_status = 'processing'
              AND ($1::timestamptz IS NULL OR generation_status_updated_at < $1)
            ORDER BY generation_status_updated_at
            LIMIT $2
        """
        async with self.get_connection() as conn:
            rows = await conn.fetch(query, older_than, limit)
        return [self._row_to_client(row) for row in rows]
