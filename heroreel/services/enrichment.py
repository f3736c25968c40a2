"""Rate-limit aware artwork enrichment through The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import httpx

from ..config import Settings
from ..errors import UpstreamThrottled
from ..models import ArtworkReference, CandidateItem, MediaKind, RateLimitState
from ..utils import dedupe_images, now_ms

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
FALLBACK_LANGUAGE = "en-US"
MAX_RATE_LIMIT_STRIKES = 5
MIN_RETRY_AFTER_MS = 1_000
MAX_BACKDROPS = 6
DEFAULT_CACHE_TTL_MS = 1000 * 60 * 60 * 12
DEFAULT_MAX_CACHE_ENTRIES = 200

RateLimitListener = Callable[[RateLimitState], None]


def parse_retry_after(value: str | None, *, now: int) -> int:
    """Return the ``Retry-After`` header as milliseconds (seconds or HTTP date)."""

    if not value:
        return 0
    text = value.strip()
    if not text:
        return 0
    try:
        return max(0, round(float(text) * 1000))
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return 0
    return max(0, int(parsed.timestamp() * 1000) - now)


def build_image_url(path: Any, size: str) -> str | None:
    if not isinstance(path, str) or not path.strip():
        return None
    if path.startswith("http"):
        return path
    normalized = path if path.startswith("/") else f"/{path}"
    return f"{IMAGE_BASE_URL}/{size}{normalized}"


class EnrichmentClient:
    """Looks up hero artwork for candidates while tracking TMDB throttling."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], int] = now_ms,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        max_cache_entries: int = DEFAULT_MAX_CACHE_ENTRIES,
    ):
        self._settings = settings
        self._client = http_client
        self._clock = clock
        self._token = (settings.tmdb_access_token or "").strip()
        self._enabled = bool(self._token)
        self._timeout = settings.tmdb_timeout_seconds
        self._cache_ttl_ms = cache_ttl_ms
        self._max_cache_entries = max(1, max_cache_entries)
        self._cache: dict[str, tuple[int, ArtworkReference]] = {}
        self._rate_limit = RateLimitState()
        self._listeners: list[RateLimitListener] = []

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def get_rate_limit_state(self) -> RateLimitState:
        """Return a copy of the current throttle state.

        Reading never relaxes the throttle or notifies listeners; an expired
        window is reported as inactive and is cleared on the next request.
        """

        state = self._rate_limit
        if state.active and self._clock() >= state.until:
            return state.model_copy(update={"active": False})
        return state.model_copy()

    def subscribe(self, listener: RateLimitListener) -> Callable[[], None]:
        """Register a listener for rate-limit changes; returns an unsubscribe."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def enrich(
        self, item: CandidateItem, *, language: str = FALLBACK_LANGUAGE
    ) -> ArtworkReference | None:
        """Return TMDB artwork for the item, or ``None`` when none is known.

        Raises :class:`UpstreamThrottled` while the upstream is rate limiting,
        including when this very call hits the limit or times out.
        """

        if not self._enabled:
            return None
        if not (item.tmdb_id or item.imdb_id):
            return None

        languages = [language or FALLBACK_LANGUAGE]
        if FALLBACK_LANGUAGE not in languages:
            languages.append(FALLBACK_LANGUAGE)

        primary: ArtworkReference | None = None
        fallback: ArtworkReference | None = None
        for index, lang in enumerate(languages):
            fetched = await self._fetch_artwork(item, lang)
            if fetched is None:
                continue
            if index == 0:
                primary = fetched
                if fetched.backdrops or len(languages) == 1:
                    break
                logger.debug(
                    "TMDB artwork for %s lacks backdrops in %s, trying %s",
                    item.id,
                    lang,
                    languages[index + 1],
                )
                continue
            fallback = fetched
            break

        if primary is not None and fallback is not None:
            return ArtworkReference(
                poster=primary.poster or fallback.poster,
                backdrops=dedupe_images([*primary.backdrops, *fallback.backdrops]),
                source="tmdb",
            )
        return primary or fallback

    async def _fetch_artwork(
        self, item: CandidateItem, language: str
    ) -> ArtworkReference | None:
        media_type = "tv" if item.kind is MediaKind.SERIES else "movie"
        tmdb_id = item.tmdb_id
        cache_key = f"{media_type}:{tmdb_id or item.imdb_id}:{language}"
        now = self._clock()

        cached = self._cache.get(cache_key)
        if cached and cached[0] > now:
            return cached[1]

        self._guard()
        if not tmdb_id and item.imdb_id:
            found = await self._request(
                f"/find/{item.imdb_id}",
                {"external_source": "imdb_id", "language": language},
            )
            if found is None:
                return None
            results = found.get("tv_results" if media_type == "tv" else "movie_results")
            first = next(
                (
                    entry
                    for entry in results or []
                    if isinstance(entry, dict) and entry.get("id") is not None
                ),
                None,
            )
            if first is None:
                return None
            tmdb_id = str(first["id"])
            self._guard()

        payload = await self._request(
            f"/{media_type}/{tmdb_id}",
            {
                "append_to_response": "images",
                "language": language,
                "include_image_language": f"{language.split('-')[0]},null",
            },
        )
        if payload is None:
            return None

        artwork = self._map_artwork(payload)
        self._cache[cache_key] = (self._clock() + self._cache_ttl_ms, artwork)
        self._prune_cache()
        return artwork

    async def _request(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any] | None:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json;charset=utf-8",
        }
        try:
            response = await asyncio.wait_for(
                self._client.get(endpoint, params=params, headers=headers),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._register_throttle(None, 0)
            raise UpstreamThrottled(
                f"TMDB request timed out for {endpoint}",
                retry_after_ms=self._rate_limit.retry_after_ms,
                until=self._rate_limit.until,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("TMDB request for %s failed: %s", endpoint, exc)
            return None

        status = response.status_code
        if status in (401, 403):
            self._enabled = False
            logger.error("TMDB token rejected (%s), disabling enrichment", status)
            return None
        if status == 429:
            retry_after = parse_retry_after(
                response.headers.get("retry-after"), now=self._clock()
            )
            self._register_throttle(status, retry_after)
            raise UpstreamThrottled(
                "TMDB rate limit exceeded",
                retry_after_ms=self._rate_limit.retry_after_ms,
                until=self._rate_limit.until,
            )
        if status == 404:
            return None
        if status >= 400:
            logger.warning("TMDB request for %s failed: %s", endpoint, status)
            return None

        self._clear_throttle()
        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON TMDB response for %s", endpoint)
            return None
        if not isinstance(data, dict):
            return None
        return data

    @staticmethod
    def _map_artwork(payload: dict[str, Any]) -> ArtworkReference:
        images = payload.get("images") if isinstance(payload.get("images"), dict) else {}
        ranked = sorted(
            (
                entry
                for entry in images.get("backdrops") or []
                if isinstance(entry, dict) and entry.get("file_path")
            ),
            key=lambda entry: float(entry.get("vote_average") or 0),
            reverse=True,
        )
        backdrops = dedupe_images(
            [build_image_url(payload.get("backdrop_path"), "original")]
            + [build_image_url(entry["file_path"], "original") for entry in ranked]
        )[:MAX_BACKDROPS]

        poster = build_image_url(payload.get("poster_path"), "w780")
        if poster is None:
            posters = images.get("posters") or []
            best = next(
                (entry for entry in posters if isinstance(entry, dict) and entry.get("file_path")),
                None,
            )
            if best is not None:
                poster = build_image_url(best["file_path"], "w780")

        return ArtworkReference(poster=poster, backdrops=backdrops, source="tmdb")

    def _guard(self) -> None:
        self._relax()
        state = self._rate_limit
        if state.active and state.until > self._clock():
            raise UpstreamThrottled(
                "TMDB rate limit active",
                retry_after_ms=state.retry_after_ms,
                until=state.until,
            )

    def _relax(self) -> None:
        state = self._rate_limit
        if state.active and self._clock() >= state.until:
            self._set_state(
                state.model_copy(
                    update={
                        "active": False,
                        "until": 0,
                        "retry_after_ms": 0,
                        "strikes": max(0, state.strikes - 1),
                    }
                )
            )

    def _register_throttle(self, status: int | None, retry_after_ms: int) -> None:
        delay = max(retry_after_ms, MIN_RETRY_AFTER_MS)
        strikes = min(MAX_RATE_LIMIT_STRIKES, self._rate_limit.strikes + 1)
        backoff = delay * strikes
        until = self._clock() + backoff
        self._set_state(
            RateLimitState(
                active=True,
                until=until,
                retry_after_ms=backoff,
                last_status=status,
                strikes=strikes,
            )
        )
        logger.warning(
            "TMDB throttled (status=%s), backing off %sms after %s strike(s)",
            status,
            backoff,
            strikes,
        )

    def _clear_throttle(self) -> None:
        # Strikes survive a success and only decay as throttle windows lapse.
        cleared = self._rate_limit.model_copy(
            update={"active": False, "until": 0, "retry_after_ms": 0, "last_status": None}
        )
        if cleared == self._rate_limit:
            return
        self._set_state(cleared)

    def _set_state(self, state: RateLimitState) -> None:
        self._rate_limit = state
        snapshot = state.model_copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Rate limit listener failed")

    def _prune_cache(self) -> None:
        overflow = len(self._cache) - self._max_cache_entries
        if overflow <= 0:
            return
        for key, _ in sorted(self._cache.items(), key=lambda entry: entry[1][0])[:overflow]:
            self._cache.pop(key, None)
