"""Pydantic models describing hero pool payloads."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MediaKind(str, Enum):
    """The two content categories a hero pool is built for."""

    MOVIES = "movies"
    SERIES = "series"


_KIND_ALIASES: dict[str, MediaKind] = {
    "movie": MediaKind.MOVIES,
    "movies": MediaKind.MOVIES,
    "film": MediaKind.MOVIES,
    "series": MediaKind.SERIES,
    "show": MediaKind.SERIES,
    "shows": MediaKind.SERIES,
    "tv": MediaKind.SERIES,
}

ALL_KINDS: tuple[MediaKind, ...] = (MediaKind.MOVIES, MediaKind.SERIES)

# Keeps the two kinds from rotating in lockstep.
KIND_SEED_OFFSETS: dict[MediaKind, int] = {MediaKind.MOVIES: 0, MediaKind.SERIES: 7}


def normalize_kind(value: object) -> MediaKind:
    """Map the loose kind spellings used by callers onto :class:`MediaKind`."""

    if isinstance(value, MediaKind):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unsupported media kind: {value!r}")
    normalized = _KIND_ALIASES.get(value.strip().lower())
    if normalized is None:
        raise ValueError(f"Unsupported media kind: {value!r}")
    return normalized


PipelineState = Literal["idle", "loading", "ready", "stale", "error", "disabled"]
PoolSource = Literal["fresh", "cache", "remote"]
ArtworkSource = Literal["tmdb", "local"]


class WireModel(BaseModel):
    """Base model serialising to the camelCase payloads the frontend expects."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class CandidateItem(WireModel):
    """Read-only projection of a catalog entry eligible for the hero banner."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    id: str
    kind: MediaKind
    title: str = ""
    added_at: int = 0
    rating: float | None = Field(default=None, ge=0, le=10)
    genres: tuple[str, ...] = ()
    year: int | None = None
    duration_minutes: int | None = None
    summary: str | None = None
    poster: str | None = None
    backdrop: str | None = None
    tmdb_id: str | None = None
    imdb_id: str | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: object) -> MediaKind:
        return normalize_kind(value)

    @field_validator("genres", mode="before")
    @classmethod
    def _clean_genres(cls, value: object) -> tuple[str, ...]:
        """Trim, collapse whitespace and de-duplicate genre names."""

        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        cleaned: list[str] = []
        for entry in value:  # type: ignore[union-attr]
            if not isinstance(entry, str):
                continue
            name = " ".join(entry.split())
            if name and name not in cleaned:
                cleaned.append(name)
        return tuple(cleaned)

    @field_validator("tmdb_id", "imdb_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return str(value).strip() or None


class ArtworkReference(WireModel):
    """Resolved artwork for a pool entry, either enriched or local."""

    poster: str | None = None
    backdrops: list[str] = Field(default_factory=list)
    source: ArtworkSource = "local"


class PoolEntry(WireModel):
    """One selected candidate together with its slot and artwork."""

    pool_id: str
    slot: str
    item: CandidateItem
    artwork: ArtworkReference = Field(default_factory=ArtworkReference)


class RateLimitState(WireModel):
    """Observed throttle condition of the enrichment upstream."""

    active: bool = False
    until: int = 0
    retry_after_ms: int = 0
    last_status: int | None = None
    strikes: int = 0


class EnrichmentMeta(WireModel):
    enabled: bool = False
    rate_limit: RateLimitState = Field(default_factory=RateLimitState)
    hit_limit: bool = False


class PoolMeta(WireModel):
    """Bookkeeping about how a pool was produced."""

    source: PoolSource = "fresh"
    plan: dict[str, int] = Field(default_factory=dict)
    total_candidates: int = 0
    selection_count: int = 0
    shortfall: dict[str, int] = Field(default_factory=dict)
    diversity_relaxed: bool = False
    enrichment: EnrichmentMeta = Field(default_factory=EnrichmentMeta)


class PoolResult(WireModel):
    """The allocator's output for one kind, as cached and served."""

    kind: MediaKind
    items: list[PoolEntry] = Field(default_factory=list)
    updated_at: int
    expires_at: int
    from_cache: bool = False
    policy_hash: str
    slot_summary: dict[str, int] = Field(default_factory=dict)
    matches_policy: bool = True
    meta: PoolMeta = Field(default_factory=PoolMeta)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: object) -> MediaKind:
        return normalize_kind(value)

    @property
    def has_shortfall(self) -> bool:
        """Whether fewer items were selected than the slot plan asked for."""

        return self.meta.selection_count < sum(self.meta.plan.values())

    def to_payload(self) -> dict[str, object]:
        """Return the JSON-compatible camelCase payload."""

        return self.model_dump(mode="json", by_alias=True)


class PipelineStatus(WireModel):
    """Per-kind state of the pipeline orchestrator."""

    kind: MediaKind
    state: PipelineState = "idle"
    regenerating: bool = False
    size: int = 0
    updated_at: int = 0
    expires_at: int = 0
    from_cache: bool = False
    source: str = ""
    policy_hash: str = ""
    slot_summary: dict[str, int] = Field(default_factory=dict)
    matches_policy: bool = True
    is_expired: bool = False
    last_error: str | None = None
    last_refresh: int = 0
    rate_limit: RateLimitState = Field(default_factory=RateLimitState)

    @property
    def settled(self) -> bool:
        """Whether the kind reached a state the presentation layer can act on."""

        return self.state in {"ready", "stale", "error"}


class PipelineSnapshot(WireModel):
    """Immutable view of the orchestrator handed to subscribers."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    enabled: bool
    feature_source: str
    ready: bool
    active_kind: MediaKind
    status: dict[MediaKind, PipelineStatus]
    pools: dict[MediaKind, tuple[PoolEntry, ...]]
