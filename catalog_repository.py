"""
catalog_repository.py — Read-only switch catalog access.

CatalogStore is the interface the resolution pipeline consumes.
AsyncPGCatalogStore backs it with PostgreSQL + pgvector; InMemoryCatalogStore
evaluates the same queries over a list of records for tests and local runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Mapping, Optional, Sequence

import asyncpg
from pydantic import ValidationError

from embeddings import cosine_similarity
from errors import CatalogQueryError
from models import SwitchRecord
from query_builder import (
    SELECT_COLUMNS,
    SWITCHES_TABLE,
    SQLBuilder,
    build_characteristic_condition,
    build_generic_term_condition,
    build_like_lookup,
    build_material_condition,
    contains_pattern,
    generic_term_matches,
    material_matches,
    prefix_pattern,
    resolve_characteristic,
)

logger = logging.getLogger(__name__)

# Tiered LIKE confidences for name candidates
PREFIX_MATCH_CONFIDENCE = 0.9
CONTAINS_MATCH_CONFIDENCE = 0.8
MANUFACTURER_NAME_MATCH_CONFIDENCE = 0.7


# ── Row Mapping ──────────────────────────────────────────────────────────────

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name",),
    "manufacturer": ("manufacturer",),
    "type": ("type",),
    "top_housing": ("top_housing", "topHousing"),
    "bottom_housing": ("bottom_housing", "bottomHousing"),
    "stem": ("stem",),
    "mount": ("mount",),
    "spring": ("spring",),
    "actuation_force_g": ("actuation_force_g", "actuationForceG",
                          "actuation_force", "actuationForce"),
    "bottom_out_force_g": ("bottom_out_force_g", "bottomOutForceG", "bottom_out_force",
                           "bottom_force", "bottomForce"),
    "pre_travel_mm": ("pre_travel_mm", "preTravelMm", "pre_travel", "preTravel"),
    "total_travel_mm": ("total_travel_mm", "totalTravelMm", "total_travel", "totalTravel"),
    "embedding": ("embedding",),
}


def _decode_embedding(value: Any) -> Optional[tuple[float, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        value = json.loads(text)
    return tuple(float(x) for x in value)


def record_from_row(row: Mapping[str, Any]) -> SwitchRecord:
    """
    Map one catalog row (asyncpg Record, dict with snake_case, camelCase or
    legacy column names) into a validated SwitchRecord.
    """
    data = dict(row)
    values: dict[str, Any] = {}
    for field, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if alias in data and data[alias] is not None:
                values[field] = data[alias]
                break

    for key, v in list(values.items()):
        if isinstance(v, str) and key != "embedding":
            v = v.strip()
            values[key] = v or None

    try:
        values["embedding"] = _decode_embedding(values.get("embedding"))
        return SwitchRecord(**values)
    except (ValidationError, ValueError, TypeError) as e:
        raise CatalogQueryError(f"Malformed catalog row {data.get('name')!r}: {e}") from e


# ── Store Interface ──────────────────────────────────────────────────────────

class CatalogStore:
    """
    Read-only switch catalog.

    Implementations:
    - exact_lookup(name) -> Optional[SwitchRecord]          (case-insensitive)
    - like_lookup(pattern, limit) -> list[SwitchRecord]     (SQL LIKE pattern)
    - vector_lookup(embedding, limit, names?) -> list[(SwitchRecord, similarity)]
    - all_names() -> list[str]
    - find_candidates_by_name(name, limit) -> list[(SwitchRecord, confidence)]
    - find_by_characteristic(term, limit) -> list[SwitchRecord]
    - find_by_material(term, limit) -> list[SwitchRecord]
    - get_stats() -> dict
    - health_check() -> dict

    Failures raise CatalogQueryError.
    """

    async def exact_lookup(self, name: str) -> Optional[SwitchRecord]:
        raise NotImplementedError

    async def like_lookup(self, pattern: str, limit: int = 10) -> list[SwitchRecord]:
        raise NotImplementedError

    async def vector_lookup(
        self,
        embedding: Sequence[float],
        limit: int = 1,
        names: Optional[Sequence[str]] = None,
    ) -> list[tuple[SwitchRecord, float]]:
        raise NotImplementedError

    async def all_names(self) -> list[str]:
        raise NotImplementedError

    async def find_candidates_by_name(
        self, name: str, limit: int = 5
    ) -> list[tuple[SwitchRecord, float]]:
        raise NotImplementedError

    async def find_by_characteristic(self, term: str, limit: int = 20) -> list[SwitchRecord]:
        raise NotImplementedError

    async def find_by_material(self, term: str, limit: int = 10) -> list[SwitchRecord]:
        raise NotImplementedError

    async def get_stats(self) -> dict:
        raise NotImplementedError

    async def health_check(self) -> dict:
        raise NotImplementedError


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValueError("limit must be >= 1")


# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 10.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_settings(cls, settings) -> "DatabasePool":
        return cls(
            settings.asyncpg_dsn,
            min_size=settings.db_pool_min,
            max_size=settings.db_pool_max,
            command_timeout=settings.db_command_timeout_s,
        )

    async def initialize(self) -> None:
        """Create connection pool and install pgvector codec."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            init=self._init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Per-connection setup: register pgvector type codec."""
        await conn.set_type_codec(
            "vector",
            encoder=self._encode_vector,
            decoder=self._decode_vector,
            schema="public",
            format="text",
        )

    @staticmethod
    def _encode_vector(v: Sequence[float]) -> str:
        return "[" + ",".join(str(float(x)) for x in v) + "]"

    @staticmethod
    def _decode_vector(v: str) -> list[float]:
        return [float(x) for x in v.strip("[]").split(",") if x]

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")


# ── PostgreSQL Store ─────────────────────────────────────────────────────────

class AsyncPGCatalogStore(CatalogStore):
    """CatalogStore over the `switches` table with a pgvector `embedding` column."""

    def __init__(self, db: DatabasePool):
        self.db = db

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.db.acquire() as conn:
                yield conn
        except CatalogQueryError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError, RuntimeError) as e:
            logger.warning("Catalog %s failed: %s", operation, e)
            raise CatalogQueryError(f"Catalog {operation} failed: {e}") from e

    # ── Lookups ──────────────────────────────────────────────────────────

    async def exact_lookup(self, name: str) -> Optional[SwitchRecord]:
        async with self._connection("exact_lookup") as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {SELECT_COLUMNS}
                FROM {SWITCHES_TABLE} s
                WHERE LOWER(s.name) = LOWER($1)
                LIMIT 1
                """,
                name.strip(),
            )
            return record_from_row(row) if row else None

    async def like_lookup(self, pattern: str, limit: int = 10) -> list[SwitchRecord]:
        _check_limit(limit)
        sql, params = build_like_lookup(pattern, limit)
        async with self._connection("like_lookup") as conn:
            rows = await conn.fetch(sql, *params)
            return [record_from_row(r) for r in rows]

    async def vector_lookup(self, embedding, limit=1, names=None):
        """pgvector cosine similarity search."""
        _check_limit(limit)
        b = SQLBuilder()
        vec = b.add(list(embedding))
        where = "WHERE s.embedding IS NOT NULL"
        if names is not None:
            where += f" AND s.name = ANY({b.add(list(names))}::text[])"
        sql = f"""
            SELECT {SELECT_COLUMNS},
                   1 - (s.embedding <=> {vec}::vector) AS similarity
            FROM {SWITCHES_TABLE} s
            {where}
            ORDER BY s.embedding <=> {vec}::vector
            LIMIT {b.add(limit)}
        """
        async with self._connection("vector_lookup") as conn:
            rows = await conn.fetch(sql, *b.params)
            return [
                (record_from_row(r), max(0.0, min(1.0, float(r["similarity"]))))
                for r in rows
            ]

    async def all_names(self) -> list[str]:
        async with self._connection("all_names") as conn:
            rows = await conn.fetch(
                f"SELECT s.name FROM {SWITCHES_TABLE} s WHERE s.name IS NOT NULL ORDER BY s.name"
            )
            return [r["name"] for r in rows]

    async def find_candidates_by_name(self, name, limit=5):
        _check_limit(limit)
        term = name.strip()
        if not term:
            return []
        b = SQLBuilder()
        prefix = b.add(prefix_pattern(term))
        contains = b.add(contains_pattern(term))
        sql = f"""
            SELECT {SELECT_COLUMNS},
                CASE
                    WHEN LOWER(s.name) LIKE {prefix} THEN {PREFIX_MATCH_CONFIDENCE}
                    WHEN LOWER(s.name) LIKE {contains} THEN {CONTAINS_MATCH_CONFIDENCE}
                    ELSE {MANUFACTURER_NAME_MATCH_CONFIDENCE}
                END AS confidence
            FROM {SWITCHES_TABLE} s
            WHERE LOWER(s.name) LIKE {contains}
               OR LOWER(s.manufacturer || ' ' || s.name) LIKE {contains}
            ORDER BY confidence DESC, LENGTH(s.name), s.name
            LIMIT {b.add(limit)}
        """
        async with self._connection("find_candidates_by_name") as conn:
            rows = await conn.fetch(sql, *b.params)
            return [(record_from_row(r), float(r["confidence"])) for r in rows]

    async def find_by_characteristic(self, term: str, limit: int = 20) -> list[SwitchRecord]:
        _check_limit(limit)
        b = SQLBuilder()
        definition = resolve_characteristic(term)
        if definition is not None:
            cond = build_characteristic_condition(definition, b)
        else:
            logger.info("Unknown characteristic %r, using generic term search", term)
            cond = build_generic_term_condition(term, b)
        sql = f"""
            SELECT {SELECT_COLUMNS}
            FROM {SWITCHES_TABLE} s
            WHERE {cond}
            ORDER BY s.name
            LIMIT {b.add(limit)}
        """
        async with self._connection("find_by_characteristic") as conn:
            rows = await conn.fetch(sql, *b.params)
            return [record_from_row(r) for r in rows]

    async def find_by_material(self, term: str, limit: int = 10) -> list[SwitchRecord]:
        _check_limit(limit)
        b = SQLBuilder()
        cond = build_material_condition(term, b)
        sql = f"""
            SELECT DISTINCT {SELECT_COLUMNS}
            FROM {SWITCHES_TABLE} s
            WHERE {cond} AND s.name IS NOT NULL
            ORDER BY s.name
            LIMIT {b.add(limit)}
        """
        async with self._connection("find_by_material") as conn:
            rows = await conn.fetch(sql, *b.params)
            return [record_from_row(r) for r in rows]

    # ── Statistics ───────────────────────────────────────────────────────

    async def get_stats(self) -> dict:
        async with self._connection("get_stats") as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM {SWITCHES_TABLE}")
            manufacturers = await conn.fetchval(
                f"SELECT COUNT(DISTINCT manufacturer) FROM {SWITCHES_TABLE}"
            )
            with_embedding = await conn.fetchval(
                f"SELECT COUNT(*) FROM {SWITCHES_TABLE} WHERE embedding IS NOT NULL"
            )
            types = await conn.fetch(
                f"SELECT DISTINCT type FROM {SWITCHES_TABLE} WHERE type IS NOT NULL ORDER BY type"
            )
            return {
                "total_switches": total,
                "manufacturers": manufacturers,
                "with_embedding": with_embedding,
                "switch_types": [r["type"] for r in types],
            }

    # ── Health Check ─────────────────────────────────────────────────────

    async def health_check(self) -> dict:
        try:
            async with self._connection("health_check") as conn:
                version = await conn.fetchval("SELECT version()")
                count = await conn.fetchval(f"SELECT COUNT(*) FROM {SWITCHES_TABLE}")
                pool = self.db.pool
                return {
                    "status": "healthy",
                    "postgres_version": version,
                    "switch_count": count,
                    "pool_size": pool.get_size(),
                    "pool_free": pool.get_idle_size(),
                    "pool_used": pool.get_size() - pool.get_idle_size(),
                }
        except CatalogQueryError as e:
            return {"status": "unhealthy", "error": str(e)}


# ── In-Memory Store ──────────────────────────────────────────────────────────

def _like_regex(pattern: str) -> re.Pattern:
    """Translate a SQL LIKE pattern (backslash escapes) to an anchored regex."""
    out, i = [], 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


class InMemoryCatalogStore(CatalogStore):
    """In-memory catalog for testing and local development."""

    def __init__(self, records: Optional[Sequence[SwitchRecord]] = None):
        self._records: dict[str, SwitchRecord] = {}
        for r in records or ():
            self.add(r)

    def add(self, record: SwitchRecord) -> None:
        self._records[record.name.lower()] = record

    def _sorted(self) -> list[SwitchRecord]:
        return sorted(self._records.values(), key=lambda r: r.name)

    async def exact_lookup(self, name: str) -> Optional[SwitchRecord]:
        return self._records.get(name.strip().lower())

    async def like_lookup(self, pattern: str, limit: int = 10) -> list[SwitchRecord]:
        _check_limit(limit)
        rx = _like_regex(pattern.lower())
        hits = [r for r in self._records.values() if rx.fullmatch(r.name.lower())]
        hits.sort(key=lambda r: (len(r.name), r.name))
        return hits[:limit]

    async def vector_lookup(self, embedding, limit=1, names=None):
        _check_limit(limit)
        allowed = {n.lower() for n in names} if names is not None else None
        scored = []
        for r in self._sorted():
            if r.embedding is None:
                continue
            if allowed is not None and r.name.lower() not in allowed:
                continue
            sim = max(0.0, min(1.0, cosine_similarity(embedding, r.embedding)))
            scored.append((r, sim))
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    async def all_names(self) -> list[str]:
        return [r.name for r in self._sorted()]

    async def find_candidates_by_name(self, name, limit=5):
        _check_limit(limit)
        term = name.strip().lower()
        if not term:
            return []
        scored = []
        for r in self._records.values():
            lname = r.name.lower()
            if lname.startswith(term):
                conf = PREFIX_MATCH_CONFIDENCE
            elif term in lname:
                conf = CONTAINS_MATCH_CONFIDENCE
            elif term in f"{(r.manufacturer or '').lower()} {lname}":
                conf = MANUFACTURER_NAME_MATCH_CONFIDENCE
            else:
                continue
            scored.append((r, conf))
        scored.sort(key=lambda x: (-x[1], len(x[0].name), x[0].name))
        return scored[:limit]

    async def find_by_characteristic(self, term: str, limit: int = 20) -> list[SwitchRecord]:
        _check_limit(limit)
        definition = resolve_characteristic(term)
        if definition is not None:
            hits = [r for r in self._sorted() if definition.matches(r)]
        else:
            t = term.strip().lower()
            hits = [r for r in self._sorted() if generic_term_matches(t, r)]
        return hits[:limit]

    async def find_by_material(self, term: str, limit: int = 10) -> list[SwitchRecord]:
        _check_limit(limit)
        return [r for r in self._sorted() if material_matches(term, r)][:limit]

    async def get_stats(self) -> dict:
        records = list(self._records.values())
        return {
            "total_switches": len(records),
            "manufacturers": len({r.manufacturer for r in records if r.manufacturer}),
            "with_embedding": sum(1 for r in records if r.embedding is not None),
            "switch_types": sorted({r.type.value for r in records if r.type}),
        }

    async def health_check(self) -> dict:
        return {"status": "healthy", "backend": "memory", "switch_count": len(self._records)}
