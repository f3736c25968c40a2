"""Pool cache with staleness rules and anti-repeat history."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Iterable, Literal, Protocol

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import HeroCacheRecord
from ..models import MediaKind, PoolResult, normalize_kind
from ..utils import DAY_MS
from .context import EngineContext

logger = logging.getLogger(__name__)

Freshness = Literal["fresh", "stale", "expired"]

HISTORY_WINDOW_MS = 7 * DAY_MS
HISTORY_LIMIT = 60


def pool_key(kind: MediaKind) -> str:
    return f"heroPool:{kind.value}"


def history_key(kind: MediaKind) -> str:
    return f"heroHistory:{kind.value}"


class PoolStore(Protocol):
    """Durable keyed store of JSON-serialisable blobs."""

    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class MemoryPoolStore:
    """Process-local store; values are copied on the way in and out."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._values.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


class DatabasePoolStore:
    """Store backed by the ``hero_cache`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        async with self._session_factory() as session:
            record = await session.get(HeroCacheRecord, key)
            if record is None:
                return None
            return copy.deepcopy(record.payload)

    async def set(self, key: str, value: Any) -> None:
        async with self._session_factory() as session:
            record = await session.get(HeroCacheRecord, key)
            if record is None:
                session.add(HeroCacheRecord(key=key, payload=value))
            else:
                record.payload = value
            await session.commit()

    async def remove(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(HeroCacheRecord).where(HeroCacheRecord.key == key))
            await session.commit()


class PoolCache:
    """Per-kind pool storage judged against the context's current policy.

    Writes are the only mutation; :meth:`get` hands back a copy annotated with
    ``from_cache`` and ``matches_policy`` and leaves the stored blob untouched.
    """

    def __init__(self, context: EngineContext, store: PoolStore | None = None):
        self._context = context
        self._store: PoolStore = store or MemoryPoolStore()

    @property
    def store(self) -> PoolStore:
        return self._store

    async def get(
        self, kind: MediaKind | str, policy_hash: str | None = None
    ) -> PoolResult | None:
        normalized = normalize_kind(kind)
        raw = await self._store.get(pool_key(normalized))
        if raw is None:
            return None
        try:
            stored = PoolResult.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Ignoring malformed cached hero pool for %s: %s", normalized.value, exc
            )
            return None
        if stored.kind is not normalized:
            logger.warning(
                "Cached hero pool under %s belongs to %s", normalized.value, stored.kind.value
            )
            return None

        expected = policy_hash or self._context.policy_hash(normalized)
        meta = stored.meta.model_copy(update={"source": "cache"})
        return stored.model_copy(
            update={
                "from_cache": True,
                "matches_policy": stored.policy_hash == expected,
                "meta": meta,
            }
        )

    async def put(self, kind: MediaKind | str, result: PoolResult) -> None:
        normalized = normalize_kind(kind)
        if result.kind is not normalized:
            raise ValueError(
                f"Cannot store a {result.kind.value} pool under {normalized.value}"
            )
        payload = result.model_copy(update={"from_cache": False}).to_payload()
        await self._store.set(pool_key(normalized), payload)

    async def invalidate(self, kind: MediaKind | str) -> None:
        await self._store.remove(pool_key(normalize_kind(kind)))

    def freshness(self, result: PoolResult, now: int | None = None) -> Freshness:
        timestamp = self._context.now() if now is None else now
        if timestamp <= result.expires_at:
            return "fresh"
        if timestamp <= result.expires_at + self._context.policy.cache.grace_ms:
            return "stale"
        return "expired"

    def is_stale(self, result: PoolResult, now: int | None = None) -> bool:
        """Past ``expiresAt`` but still inside the grace window."""

        return self.freshness(result, now) == "stale"

    def is_expired(self, result: PoolResult, now: int | None = None) -> bool:
        return self.freshness(result, now) == "expired"

    def within_serve_cutoff(self, result: PoolResult, now: int | None = None) -> bool:
        """Whether an expired pool may still back a failed refresh."""

        max_stale = self._context.policy.cache.max_stale_ms
        if max_stale is None:
            return True
        timestamp = self._context.now() if now is None else now
        cutoff = result.expires_at + self._context.policy.cache.grace_ms + max_stale
        return timestamp <= cutoff

    async def get_history(
        self, kind: MediaKind | str, now: int | None = None
    ) -> list[tuple[str, int]]:
        """Recently shown pool ids, newest first, inside the history window."""

        normalized = normalize_kind(kind)
        timestamp = self._context.now() if now is None else now
        raw = await self._store.get(history_key(normalized))
        entries: list[tuple[str, int]] = []
        for entry in raw if isinstance(raw, list) else []:
            if not isinstance(entry, dict):
                continue
            pool_id = entry.get("id")
            seen_at = entry.get("ts")
            if not isinstance(pool_id, str) or not isinstance(seen_at, (int, float)):
                continue
            if timestamp - seen_at > HISTORY_WINDOW_MS:
                continue
            entries.append((pool_id, int(seen_at)))
        entries.sort(key=lambda entry: entry[1], reverse=True)
        return entries[:HISTORY_LIMIT]

    async def record_history(
        self, kind: MediaKind | str, pool_ids: Iterable[str], now: int | None = None
    ) -> list[tuple[str, int]]:
        normalized = normalize_kind(kind)
        timestamp = self._context.now() if now is None else now
        fresh_ids = list(dict.fromkeys(pool_ids))
        merged = [(pool_id, timestamp) for pool_id in fresh_ids]
        seen = set(fresh_ids)
        for pool_id, seen_at in await self.get_history(normalized, timestamp):
            if pool_id in seen:
                continue
            seen.add(pool_id)
            merged.append((pool_id, seen_at))
        merged = merged[:HISTORY_LIMIT]
        await self._store.set(
            history_key(normalized),
            [{"id": pool_id, "ts": seen_at} for pool_id, seen_at in merged],
        )
        return merged
