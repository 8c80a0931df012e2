from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Optional

import asyncpg

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.audit import GENESIS_HASH, AuditLogEntry, ChainVerification, verify_chain

logger = get_logger(name=__name__)


class AuditStore:
    """Append-only, hash-chained store of negotiation decisions.

    ``append`` seals the entry (sequence, previous hash, entry hash) and
    returns only once the sealed entry is durable. Appends are idempotent by
    ``entry_id`` so a retried write never produces a second record.
    """

    backend = "abstract"

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        raise NotImplementedError

    async def list_entries(self, *, scenario_id: str | None = None) -> list[AuditLogEntry]:
        raise NotImplementedError

    async def verify(self) -> ChainVerification:
        return verify_chain(await self.list_entries())

    async def close(self) -> None:
        return None


class InMemoryAuditStore(AuditStore):
    backend = "memory"

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._index: dict[str, AuditLogEntry] = {}
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._lock:
            existing = self._index.get(entry.entry_id)
            if existing is not None:
                return existing
            previous = self._entries[-1].entry_hash if self._entries else GENESIS_HASH
            sealed = entry.seal(sequence=len(self._entries) + 1, previous_hash=previous or GENESIS_HASH)
            self._entries.append(sealed)
            self._index[sealed.entry_id] = sealed
            return sealed

    async def list_entries(self, *, scenario_id: str | None = None) -> list[AuditLogEntry]:
        async with self._lock:
            entries = list(self._entries)
        if scenario_id is None:
            return entries
        return [entry for entry in entries if entry.scenario_id == scenario_id]


class JsonlAuditStore(AuditStore):
    """One sealed entry per line; each append is fsync'd before returning.

    The chain head is cached in-process, so a file must have a single writer.
    """

    backend = "jsonl"

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._loaded = False
        self._head_sequence = 0
        self._head_hash = GENESIS_HASH
        self._entry_ids: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "JsonlAuditStore":
        return cls(settings.audit.path)

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._lock:
            await self._ensure_loaded()
            if entry.entry_id in self._entry_ids:
                for existing in await asyncio.to_thread(self._read_entries):
                    if existing.entry_id == entry.entry_id:
                        return existing
            sealed = entry.seal(sequence=self._head_sequence + 1, previous_hash=self._head_hash)
            line = json.dumps(sealed.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
            await asyncio.to_thread(self._write_line, line)
            self._head_sequence = sealed.sequence or self._head_sequence + 1
            self._head_hash = sealed.entry_hash or self._head_hash
            self._entry_ids.add(sealed.entry_id)
            return sealed

    async def list_entries(self, *, scenario_id: str | None = None) -> list[AuditLogEntry]:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_entries)
        if scenario_id is None:
            return entries
        return [entry for entry in entries if entry.scenario_id == scenario_id]

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        entries = await asyncio.to_thread(self._read_entries)
        if entries:
            self._head_sequence = entries[-1].sequence or len(entries)
            self._head_hash = entries[-1].entry_hash or GENESIS_HASH
        self._entry_ids = {entry.entry_id for entry in entries}
        self._loaded = True

    def _read_entries(self) -> list[AuditLogEntry]:
        if not self._path.exists():
            return []
        entries: list[AuditLogEntry] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if line:
                    entries.append(AuditLogEntry.model_validate_json(line))
        return entries

    def _write_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        descriptor = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(descriptor, (line + "\n").encode("utf-8"))
            os.fsync(descriptor)
        finally:
            os.close(descriptor)


class PostgresAuditStore(AuditStore):
    backend = "postgres"

    # serializes chain-head reads across writers sharing the table
    _LOCK_KEY = 0x0A0D17

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS audit_log_entries(
            sequence BIGINT PRIMARY KEY,
            entry_id TEXT NOT NULL UNIQUE,
            scenario_id TEXT NOT NULL,
            previous_hash TEXT NOT NULL,
            entry_hash TEXT NOT NULL,
            recorded_at TIMESTAMPTZ NOT NULL,
            payload JSONB NOT NULL
        );
        CREATE INDEX IF NOT EXISTS audit_log_entries_scenario_idx ON audit_log_entries(scenario_id);
    """

    _INSERT = """
        INSERT INTO audit_log_entries(sequence, entry_id, scenario_id, previous_hash, entry_hash, recorded_at, payload)
        VALUES($1, $2, $3, $4, $5, $6, $7::jsonb)
    """

    def __init__(self, pool: Any | None) -> None:
        self._pool_or_factory = pool
        self._pool: Optional[asyncpg.Pool] = None
        self._schema_ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresAuditStore":
        pool = asyncpg.create_pool(
            dsn=settings.audit.postgres_dsn,
            min_size=settings.audit.pool_min_size,
            max_size=settings.audit.pool_max_size,
        )
        return cls(pool)

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            async with connection.transaction():
                await connection.execute("SELECT pg_advisory_xact_lock($1)", self._LOCK_KEY)
                existing = await connection.fetchrow(
                    "SELECT payload FROM audit_log_entries WHERE entry_id = $1",
                    entry.entry_id,
                )
                if existing is not None:
                    return AuditLogEntry.model_validate_json(existing["payload"])
                head = await connection.fetchrow(
                    "SELECT sequence, entry_hash FROM audit_log_entries ORDER BY sequence DESC LIMIT 1"
                )
                sequence = (head["sequence"] if head else 0) + 1
                previous = head["entry_hash"] if head else GENESIS_HASH
                sealed = entry.seal(sequence=sequence, previous_hash=previous)
                await connection.execute(
                    self._INSERT,
                    sealed.sequence,
                    sealed.entry_id,
                    sealed.scenario_id,
                    sealed.previous_hash,
                    sealed.entry_hash,
                    sealed.recorded_at,
                    sealed.model_dump_json(),
                )
        return sealed

    async def list_entries(self, *, scenario_id: str | None = None) -> list[AuditLogEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            if scenario_id is None:
                rows = await connection.fetch("SELECT payload FROM audit_log_entries ORDER BY sequence")
            else:
                rows = await connection.fetch(
                    "SELECT payload FROM audit_log_entries WHERE scenario_id = $1 ORDER BY sequence",
                    scenario_id,
                )
        return [AuditLogEntry.model_validate_json(row["payload"]) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            candidate = self._pool_or_factory
            if not hasattr(candidate, "__await__"):
                raise RuntimeError("Invalid asyncpg pool supplied to PostgresAuditStore")
            # awaiting an asyncpg pool initializes it once and is a no-op afterwards
            self._pool = await candidate
        if not self._schema_ready:
            async with self._pool.acquire() as connection:
                await connection.execute(self._SCHEMA)
            self._schema_ready = True
        return self._pool


def build_audit_store(settings: Settings) -> AuditStore:
    if settings.environment == "test":
        logger.info("audit_store_in_memory", reason="test_environment")
        return InMemoryAuditStore()
    backend = settings.audit.backend
    if backend == "jsonl":
        logger.info("audit_store_jsonl_enabled", path=settings.audit.path)
        return JsonlAuditStore.from_settings(settings)
    if backend == "postgres":
        logger.info("audit_store_postgres_enabled", environment=settings.environment)
        return PostgresAuditStore.from_settings(settings)
    logger.info("audit_store_in_memory", reason="configured")
    return InMemoryAuditStore()
