"""Per-kind hero pool orchestration."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Literal

import httpx
from sqlalchemy.exc import SQLAlchemyError

from ..errors import HeroPoolError, RefreshFailed, SourceUnavailable
from ..models import (
    ALL_KINDS,
    MediaKind,
    PipelineSnapshot,
    PipelineState,
    PipelineStatus,
    PoolEntry,
    PoolResult,
    RateLimitState,
    normalize_kind,
)
from ..policy import HeroPolicy
from .allocator import allocate
from .candidates import CandidateSource
from .context import EngineContext
from .enrichment import EnrichmentClient
from .pool_cache import PoolCache
from .rotation import RotationPlan, build_rotation_plan

logger = logging.getLogger(__name__)

FeatureSource = Literal["user", "policy", "default"]
SnapshotListener = Callable[[PipelineSnapshot], None]

# Expected refresh failures; anything else is also handled but logged with a traceback.
FETCH_ERRORS: tuple[type[BaseException], ...] = (
    HeroPoolError,
    httpx.HTTPError,
    SQLAlchemyError,
    ValueError,
    OSError,
)

_UNSET: Any = object()


def resolve_feature_state(
    user_override: bool | None, policy: HeroPolicy
) -> tuple[bool, FeatureSource]:
    """User override beats the policy default, which beats "enabled"."""

    if user_override is not None:
        return bool(user_override), "user"
    if policy.features.hero_pipeline is not None:
        return bool(policy.features.hero_pipeline), "policy"
    return True, "default"


class RemotePoolClient:
    """Fetches server-computed pools from another hero backend."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def fetch(self, kind: MediaKind, *, force: bool = False) -> PoolResult:
        params = {"force": "1"} if force else None
        response = await self._client.get(f"/api/hero/{kind.value}", params=params)
        response.raise_for_status()
        result = PoolResult.model_validate(response.json())
        if result.kind is not kind:
            raise ValueError(
                f"Remote hero backend returned a {result.kind.value} pool for {kind.value}"
            )
        meta = result.meta.model_copy(update={"source": "remote"})
        return result.model_copy(update={"from_cache": False, "meta": meta})


class HeroPipeline:
    """Coordinates fetching, caching and publishing hero pools per kind.

    The orchestrator is the only writer of pool state and statuses. At most
    one fetch per kind is in flight; concurrent callers share its result.
    Subscribers receive deep-copied snapshots through a single dispatch
    queue, so delivery follows mutation order and is never reentrant.
    """

    def __init__(
        self,
        context: EngineContext,
        cache: PoolCache,
        source: CandidateSource,
        *,
        enricher: EnrichmentClient | None = None,
        remote: RemotePoolClient | None = None,
        user_override: bool | None = None,
    ):
        self._context = context
        self._cache = cache
        self._source = source
        self._enricher = enricher
        self._remote = remote
        self._user_override = user_override
        self._enabled, self._feature_source = resolve_feature_state(
            user_override, context.policy
        )
        self._active_kind: MediaKind = context.policy.fallback.prefer
        self._status: dict[MediaKind, PipelineStatus] = {
            kind: PipelineStatus(kind=kind, state="idle" if self._enabled else "disabled")
            for kind in ALL_KINDS
        }
        self._pools: dict[MediaKind, PoolResult | None] = {kind: None for kind in ALL_KINDS}
        self._in_flight: dict[MediaKind, asyncio.Task[PoolResult | None]] = {}
        self._forced: set[MediaKind] = set()
        self._refresh_jobs: dict[MediaKind, asyncio.Task[None]] = {}
        self._listeners: list[SnapshotListener] = []
        self._pending: deque[PipelineSnapshot] = deque()
        self._dispatching = False
        self._closed = False
        self._unsubscribe_rate_limit: Callable[[], None] | None = None
        if enricher is not None:
            self._unsubscribe_rate_limit = enricher.subscribe(self._on_rate_limit)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def feature_source(self) -> FeatureSource:
        return self._feature_source

    @property
    def active_kind(self) -> MediaKind:
        return self._active_kind

    @property
    def context(self) -> EngineContext:
        return self._context

    def configure(
        self,
        policy: HeroPolicy | None = None,
        *,
        user_override: bool | None = _UNSET,
    ) -> None:
        """Swap the policy and/or the per-user feature override.

        Pools built under a different selection hash stop matching and are
        refetched by the next :meth:`ensure`.
        """

        if policy is not None:
            for kind in self._context.set_policy(policy):
                self._mark_policy_mismatch(kind)
        if user_override is not _UNSET:
            self._user_override = user_override
        self._resolve_features()
        self._notify()

    def reload_policy(self) -> None:
        """Pick up edits to the policy file, if the context has one."""

        before = self._context.policy
        changed = self._context.reload_policy()
        if self._context.policy is before:
            return
        for kind in changed:
            self._mark_policy_mismatch(kind)
        self._resolve_features()
        self._notify()

    def _resolve_features(self) -> None:
        enabled, source = resolve_feature_state(self._user_override, self._context.policy)
        was_enabled = self._enabled
        self._enabled, self._feature_source = enabled, source
        if was_enabled and not enabled:
            logger.info("Hero pipeline disabled (%s)", source)
            for kind in ALL_KINDS:
                self._update_status(kind, state="disabled", regenerating=False)
        elif enabled and not was_enabled:
            logger.info("Hero pipeline enabled (%s)", source)
            for kind in ALL_KINDS:
                self._update_status(kind, state=self._resting_state(kind))

    def set_active_kind(self, kind: MediaKind | str) -> None:
        normalized = normalize_kind(kind)
        if normalized is self._active_kind:
            return
        self._active_kind = normalized
        self._notify()

    async def ensure(self, kind: MediaKind | str) -> PoolResult | None:
        """Return a usable pool, fetching at most once per kind concurrently.

        A fresh pool is returned immediately. A stale one is returned while a
        background refresh runs. Expired or policy-mismatched pools are
        refetched first. Raises :class:`RefreshFailed` only when the fetch
        fails and no pool can be served instead.
        """

        normalized = normalize_kind(kind)
        if not self._enabled:
            return None

        pool = self._pools[normalized]
        if pool is not None and pool.matches_policy:
            freshness = self._cache.freshness(pool)
            if freshness == "fresh":
                return pool.model_copy(deep=True)
            if freshness == "stale":
                if self._status[normalized].state != "loading":
                    self._update_status(normalized, state="stale")
                    self._notify()
                self._schedule_refresh(normalized)
                return pool.model_copy(deep=True)

        return await self._join(normalized, force=False)

    async def refresh(self, kind: MediaKind | str) -> PoolResult | None:
        """Fetch a new pool regardless of freshness."""

        normalized = normalize_kind(kind)
        if not self._enabled:
            return None
        return await self._join(normalized, force=True)

    async def prime_all(self) -> None:
        await asyncio.gather(*(self._settle(self.ensure, kind) for kind in ALL_KINDS))

    async def refresh_all(self) -> dict[MediaKind, PipelineStatus]:
        await asyncio.gather(*(self._settle(self.refresh, kind) for kind in ALL_KINDS))
        return {kind: self.get_status(kind) for kind in ALL_KINDS}

    def get_pool(self, kind: MediaKind | str) -> list[PoolEntry]:
        """Entries of the current pool; empty while disabled or not ready."""

        try:
            normalized = normalize_kind(kind)
        except ValueError:
            return []
        pool = self._pools[normalized]
        if not self._enabled or pool is None or not pool.matches_policy:
            return []
        return [entry.model_copy(deep=True) for entry in pool.items]

    def get_status(self, kind: MediaKind | str) -> PipelineStatus:
        """Status of one kind; aliases such as ``"tv"`` are accepted.

        Unlike :meth:`get_pool` there is no empty answer for an unsupported
        kind, so it raises ``ValueError`` and callers validate at their
        boundary (the HTTP routes answer 400).
        """

        normalized = normalize_kind(kind)
        status = self._status[normalized]
        pool = self._pools[normalized]
        return status.model_copy(
            update={
                "is_expired": bool(pool is not None and self._cache.is_expired(pool)),
                "rate_limit": self._rate_limit_state(),
            },
            deep=True,
        )

    def get_rotation_plan(self, kind: MediaKind | str) -> RotationPlan:
        normalized = normalize_kind(kind)
        pool = self._pools[normalized]
        return build_rotation_plan(
            normalized,
            self.get_pool(normalized),
            updated_at=pool.updated_at if pool is not None else 0,
            now=self._context.now(),
            min_pool_size=self._context.policy.rotation.min_pool_size,
        )

    def get_snapshot(self) -> PipelineSnapshot:
        statuses = {kind: self.get_status(kind) for kind in ALL_KINDS}
        return PipelineSnapshot(
            enabled=self._enabled,
            feature_source=self._feature_source,
            ready=all(
                status.settled or status.state == "disabled" for status in statuses.values()
            ),
            active_kind=self._active_kind,
            status=statuses,
            pools={kind: tuple(self.get_pool(kind)) for kind in ALL_KINDS},
        )

    def get_debug_snapshot(self) -> dict[str, Any]:
        policy = self._context.policy
        kinds: dict[str, Any] = {}
        for kind in ALL_KINDS:
            status = self._status[kind]
            pool = self._pools[kind]
            kinds[kind.value] = {
                "state": status.state,
                "regenerating": status.regenerating,
                "size": len(pool.items) if pool else 0,
                "freshness": self._cache.freshness(pool) if pool else None,
                "policyHash": self._context.policy_hash(kind),
                "poolPolicyHash": pool.policy_hash if pool else None,
                "matchesPolicy": pool.matches_policy if pool else None,
                "slotSummary": dict(pool.slot_summary) if pool else {},
                "shortfall": dict(pool.meta.shortfall) if pool else {},
                "source": pool.meta.source if pool else None,
                "updatedAt": pool.updated_at if pool else None,
                "expiresAt": pool.expires_at if pool else None,
                "lastError": status.last_error,
                "lastRefresh": status.last_refresh,
                "inFlight": kind in self._in_flight,
            }
        return {
            "enabled": self._enabled,
            "featureSource": self._feature_source,
            "activeKind": self._active_kind.value,
            "remote": self._remote is not None,
            "language": policy.language,
            "poolSizes": {kind.value: policy.pool_size(kind) for kind in ALL_KINDS},
            "rateLimit": self._rate_limit_state().model_dump(mode="json", by_alias=True),
            "kinds": kinds,
        }

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register for snapshots after each mutation; returns an unsubscribe."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def close(self) -> None:
        self._closed = True
        if self._unsubscribe_rate_limit is not None:
            self._unsubscribe_rate_limit()
            self._unsubscribe_rate_limit = None
        tasks = [*self._refresh_jobs.values(), *self._in_flight.values()]
        self._refresh_jobs.clear()
        self._in_flight.clear()
        self._forced.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    async def _join(self, kind: MediaKind, *, force: bool) -> PoolResult | None:
        while True:
            task = self._in_flight.get(kind)
            if task is None:
                task = asyncio.create_task(self._run_fetch(kind, force=force))
                self._in_flight[kind] = task
                if force:
                    self._forced.add(kind)
                break
            if not force or kind in self._forced:
                break
            # A non-forced load may settle on a cached pool, so queue behind it.
            await asyncio.wait([task])
            if self._closed:
                break
        return await asyncio.shield(task)

    async def _run_fetch(self, kind: MediaKind, *, force: bool) -> PoolResult | None:
        try:
            return await self._load(kind, force=force)
        finally:
            if self._in_flight.get(kind) is asyncio.current_task():
                del self._in_flight[kind]
                self._forced.discard(kind)

    async def _load(self, kind: MediaKind, *, force: bool) -> PoolResult | None:
        fallback = self._pools[kind]
        if fallback is None:
            self._update_status(kind, state="loading", regenerating=False)
            self._notify()
            try:
                cached = await self._cache.get(kind)
            except FETCH_ERRORS as exc:
                logger.warning("Failed to read cached %s hero pool: %s", kind.value, exc)
                cached = None
            except Exception:
                logger.exception("Unexpected error reading cached %s hero pool", kind.value)
                cached = None
            if cached is not None and cached.matches_policy and not force:
                freshness = self._cache.freshness(cached)
                if freshness == "fresh":
                    self._apply(kind, cached, "ready")
                    return cached.model_copy(deep=True)
                if freshness == "stale":
                    self._apply(kind, cached, "stale")
                    self._schedule_refresh(kind)
                    return cached.model_copy(deep=True)
            fallback = cached

        return await self._fetch(kind, force=force, fallback=fallback)

    async def _fetch(
        self, kind: MediaKind, *, force: bool, fallback: PoolResult | None
    ) -> PoolResult | None:
        self._update_status(kind, state="loading", regenerating=fallback is not None)
        self._notify()
        logger.info("Refreshing %s hero pool (force=%s)", kind.value, force)

        try:
            result = await self._fetch_pool(kind, force=force)
        except SourceUnavailable as exc:
            return self._handle_failure(kind, exc, fallback, raise_on_empty=False)
        except FETCH_ERRORS as exc:
            return self._handle_failure(kind, exc, fallback, raise_on_empty=True)
        except Exception as exc:
            logger.exception("Unexpected error refreshing %s hero pool", kind.value)
            return self._handle_failure(kind, exc, fallback, raise_on_empty=True)

        self._apply(kind, result, "ready", refreshed=True)
        logger.info(
            "Hero pool for %s ready with %s item(s) from %s",
            kind.value,
            len(result.items),
            result.meta.source,
        )
        return result.model_copy(deep=True)

    async def _fetch_pool(self, kind: MediaKind, *, force: bool) -> PoolResult:
        if self._remote is not None:
            try:
                result = await self._remote.fetch(kind, force=force)
            except FETCH_ERRORS as exc:
                logger.warning(
                    "Remote hero pool for %s unavailable, building locally: %s",
                    kind.value,
                    exc,
                )
            else:
                await self._cache.put(kind, result)
                return result
        return await self._build_local(kind)

    async def _build_local(self, kind: MediaKind) -> PoolResult:
        candidates = await self._source.list_candidates(kind)
        history = await self._cache.get_history(kind)
        # The policy may have been swapped while the candidates were loading.
        policy = self._context.policy
        result = await allocate(
            candidates,
            policy,
            self._rate_limit_state(),
            kind=kind,
            enricher=self._enricher,
            previous_ids=[pool_id for pool_id, _ in history],
            now=self._context.now(),
        )
        await self._cache.put(kind, result)
        await self._cache.record_history(
            kind, [entry.pool_id for entry in result.items], now=result.updated_at
        )
        return result

    def _handle_failure(
        self,
        kind: MediaKind,
        exc: BaseException,
        fallback: PoolResult | None,
        *,
        raise_on_empty: bool,
    ) -> PoolResult | None:
        message = str(exc) or exc.__class__.__name__
        logger.warning("Hero pool refresh failed for %s: %s", kind.value, message)

        if fallback is not None and self._cache.within_serve_cutoff(fallback):
            state: PipelineState = "stale"
            if fallback.matches_policy and self._cache.freshness(fallback) == "fresh":
                state = "ready"
            self._apply(kind, fallback, state)
            self._update_status(kind, last_error=message)
            self._notify()
            return fallback.model_copy(deep=True)

        self._pools[kind] = None
        self._update_status(
            kind,
            state="error" if self._enabled else "disabled",
            regenerating=False,
            size=0,
            updated_at=0,
            expires_at=0,
            from_cache=False,
            source="",
            policy_hash="",
            slot_summary={},
            matches_policy=True,
            last_error=message,
        )
        self._notify()
        if raise_on_empty:
            raise RefreshFailed(kind.value, message) from exc
        return None

    def _apply(
        self, kind: MediaKind, result: PoolResult, state: PipelineState, *, refreshed: bool = False
    ) -> None:
        matches = result.meta.source == "remote" or (
            result.policy_hash == self._context.policy_hash(kind)
        )
        if matches != result.matches_policy:
            result = result.model_copy(update={"matches_policy": matches})
        if not matches and state == "ready":
            state = "stale"
        self._pools[kind] = result

        changes: dict[str, Any] = {
            "state": state if self._enabled else "disabled",
            "regenerating": False,
            "size": len(result.items),
            "updated_at": result.updated_at,
            "expires_at": result.expires_at,
            "from_cache": result.from_cache,
            "source": result.meta.source,
            "policy_hash": result.policy_hash,
            "slot_summary": dict(result.slot_summary),
            "matches_policy": matches,
        }
        if refreshed:
            changes["last_error"] = None
            changes["last_refresh"] = self._context.now()
        self._update_status(kind, **changes)
        self._notify()

    def _mark_policy_mismatch(self, kind: MediaKind) -> None:
        pool = self._pools[kind]
        if pool is None or pool.meta.source == "remote":
            return
        matches = pool.policy_hash == self._context.policy_hash(kind)
        self._pools[kind] = pool.model_copy(update={"matches_policy": matches})
        changes: dict[str, Any] = {"matches_policy": matches}
        if not matches and self._status[kind].state == "ready":
            changes["state"] = "stale"
        self._update_status(kind, **changes)

    def _resting_state(self, kind: MediaKind) -> PipelineState:
        pool = self._pools[kind]
        if pool is None:
            return "error" if self._status[kind].last_error else "idle"
        if pool.matches_policy and self._cache.freshness(pool) == "fresh":
            return "ready"
        return "stale"

    def _schedule_refresh(self, kind: MediaKind) -> None:
        if self._closed:
            return
        existing = self._refresh_jobs.get(kind)
        if existing is not None and not existing.done():
            return

        async def _runner() -> None:
            try:
                await self.refresh(kind)
            except RefreshFailed:
                pass
            except Exception:  # pragma: no cover - safety net for background tasks
                logger.exception("Background hero refresh failed for %s", kind.value)
            finally:
                if self._refresh_jobs.get(kind) is asyncio.current_task():
                    self._refresh_jobs.pop(kind, None)

        self._refresh_jobs[kind] = asyncio.create_task(_runner())

    async def _settle(self, operation: Callable[[MediaKind], Any], kind: MediaKind) -> None:
        try:
            await operation(kind)
        except RefreshFailed as exc:
            logger.warning("%s", exc)

    def _rate_limit_state(self) -> RateLimitState:
        if self._enricher is None:
            return RateLimitState()
        return self._enricher.get_rate_limit_state()

    def _on_rate_limit(self, state: RateLimitState) -> None:
        for kind in ALL_KINDS:
            self._update_status(kind, rate_limit=state)
        self._notify()

    def _update_status(self, kind: MediaKind, **changes: Any) -> None:
        self._status[kind] = self._status[kind].model_copy(update=changes)

    def _notify(self) -> None:
        if not self._listeners:
            return
        self._pending.append(self.get_snapshot())
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                snapshot = self._pending.popleft()
                for listener in list(self._listeners):
                    try:
                        listener(snapshot)
                    except Exception:  # pragma: no cover - listener safety net
                        logger.exception("Hero pipeline listener failed")
        finally:
            self._dispatching = False
