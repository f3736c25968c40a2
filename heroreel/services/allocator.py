"""Slot allocation for hero pools."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from statistics import median
from typing import Callable, Iterable, Mapping, Protocol, Sequence

from ..errors import SourceUnavailable, UpstreamThrottled
from ..models import (
    KIND_SEED_OFFSETS,
    ArtworkReference,
    CandidateItem,
    EnrichmentMeta,
    MediaKind,
    PoolEntry,
    PoolMeta,
    PoolResult,
    RateLimitState,
    normalize_kind,
)
from ..policy import DiversityCaps, HeroPolicy, SlotPolicy
from ..utils import dedupe_images, day_seed, normalize_image_path, now_ms, round_half_up

logger = logging.getLogger(__name__)

MAX_GENRES_PER_ITEM = 3


class ArtworkEnricher(Protocol):
    """What the allocator needs from the metadata enrichment client."""

    @property
    def is_enabled(self) -> bool:
        ...

    def get_rate_limit_state(self) -> RateLimitState:
        ...

    async def enrich(
        self, item: CandidateItem, *, language: str = ...
    ) -> ArtworkReference | None:
        ...


def compute_slot_plan(pool_size: int, slots: Mapping[str, SlotPolicy]) -> dict[str, int]:
    """Turn slot quotas into target counts summing to ``pool_size``.

    Targets are ``round(quota * pool_size)`` in declared order, never more than
    what is still unassigned; the last slot takes whatever remains.
    """

    names = list(slots)
    plan: dict[str, int] = {}
    remaining = max(0, pool_size)
    for index, name in enumerate(names):
        if index == len(names) - 1:
            plan[name] = remaining
            break
        target = min(remaining, round_half_up(slots[name].quota * pool_size))
        plan[name] = target
        remaining -= target
    return plan


def prepare_candidates(items: Iterable[CandidateItem]) -> list[CandidateItem]:
    """Drop duplicate identifiers and trim genres to the first few."""

    prepared: list[CandidateItem] = []
    seen: set[str] = set()
    for item in items:
        if not item.id or item.id in seen:
            continue
        seen.add(item.id)
        if len(item.genres) > MAX_GENRES_PER_ITEM:
            item = item.model_copy(update={"genres": item.genres[:MAX_GENRES_PER_ITEM]})
        prepared.append(item)
    return prepared


def _rating_key(item: CandidateItem) -> tuple[bool, float, int, str]:
    rating = item.rating
    return (rating is None, -(rating or 0.0), -item.added_at, item.id)


def rank_new(items: Sequence[CandidateItem]) -> list[CandidateItem]:
    return sorted(items, key=lambda item: (-item.added_at, item.id))


def rank_top_rated(items: Sequence[CandidateItem]) -> list[CandidateItem]:
    return sorted(items, key=_rating_key)


def rank_old_but_gold(items: Sequence[CandidateItem]) -> list[CandidateItem]:
    """Highest rated among the items added before the median add date."""

    dated = [item.added_at for item in items if item.added_at > 0]
    if not dated:
        return []
    threshold = median(dated)
    return rank_top_rated([item for item in items if 0 < item.added_at < threshold])


def rank_random(items: Sequence[CandidateItem], seed: int) -> list[CandidateItem]:
    ordered = sorted(items, key=lambda item: item.id)
    random.Random(seed).shuffle(ordered)
    return ordered


SLOT_STRATEGIES: dict[str, Callable[[Sequence[CandidateItem]], list[CandidateItem]]] = {
    "new": rank_new,
    "topRated": rank_top_rated,
    "oldButGold": rank_old_but_gold,
}


def apply_anti_repeat(
    ranked: Sequence[CandidateItem], previous_ids: set[str], weight: float
) -> list[CandidateItem]:
    """Push recently shown items down the ranking without removing them.

    A repeat at position ``i`` is re-ranked as if it sat at
    ``i + weight * len(ranked)``; ties keep the original order.
    """

    if not previous_ids or weight <= 0:
        return list(ranked)
    penalty = weight * len(ranked)
    decorated = [
        (index + (penalty if item.id in previous_ids else 0), index, item)
        for index, item in enumerate(ranked)
    ]
    decorated.sort(key=lambda entry: (entry[0], entry[1]))
    return [item for _, _, item in decorated]


@dataclass(slots=True)
class _Selection:
    caps: DiversityCaps
    pool_size: int
    entries: list[tuple[str, CandidateItem]] = field(default_factory=list)
    selected: set[str] = field(default_factory=set)
    genre_counts: dict[str, int] = field(default_factory=dict)
    year_counts: dict[int, int] = field(default_factory=dict)
    realized: dict[str, int] = field(default_factory=dict)

    @property
    def remaining(self) -> int:
        return self.pool_size - len(self.entries)

    def passes_caps(self, item: CandidateItem) -> bool:
        for genre in item.genres:
            if self.genre_counts.get(genre.casefold(), 0) >= self.caps.per_genre:
                return False
        if item.year is not None:
            if self.year_counts.get(item.year, 0) >= self.caps.per_year:
                return False
        return True

    def accept(self, item: CandidateItem, slot: str) -> None:
        self.entries.append((slot, item))
        self.selected.add(item.id)
        for genre in item.genres:
            key = genre.casefold()
            self.genre_counts[key] = self.genre_counts.get(key, 0) + 1
        if item.year is not None:
            self.year_counts[item.year] = self.year_counts.get(item.year, 0) + 1
        self.realized[slot] = self.realized.get(slot, 0) + 1

    def take(
        self, ranked: Iterable[CandidateItem], count: int, slot: str, *, enforce_caps: bool
    ) -> int:
        taken = 0
        for item in ranked:
            if taken >= count or self.remaining <= 0:
                break
            if item.id in self.selected:
                continue
            if enforce_caps and not self.passes_caps(item):
                continue
            self.accept(item, slot)
            taken += 1
        return taken


def select_entries(
    candidates: Sequence[CandidateItem],
    policy: HeroPolicy,
    kind: MediaKind,
    *,
    previous_ids: Iterable[str] | None = None,
    now: int | None = None,
) -> tuple[list[tuple[str, CandidateItem]], dict[str, int], dict[str, int], bool]:
    """Pick pool members per slot.

    Returns ``(entries, plan, realized, diversity_relaxed)`` where ``entries``
    pairs each selected item with its slot name in allocation order.
    """

    timestamp = now_ms() if now is None else now
    pool_size = policy.pool_size(kind)
    plan = compute_slot_plan(pool_size, policy.slots)
    prepared = prepare_candidates(candidates)
    history = set(previous_ids or ())
    weight = policy.diversity.anti_repeat
    seed = day_seed(timestamp, KIND_SEED_OFFSETS[kind])

    rankings: dict[str, list[CandidateItem]] = {}
    for name in plan:
        strategy = SLOT_STRATEGIES.get(name)
        ranked = strategy(prepared) if strategy else rank_random(prepared, seed)
        rankings[name] = apply_anti_repeat(ranked, history, weight)

    realized = {name: 0 for name in plan}
    state = _Selection(
        caps=policy.diversity.caps(pool_size), pool_size=pool_size, realized=realized
    )

    carry = 0
    for name, target in plan.items():
        wanted = min(target + carry, state.remaining)
        taken = state.take(rankings[name], wanted, name, enforce_caps=True)
        carry = wanted - taken

    diversity_relaxed = False
    if state.remaining > 0 and plan:
        last_slot = list(plan)[-1]
        leftovers = apply_anti_repeat(rank_top_rated(prepared), history, weight)
        state.take(leftovers, state.remaining, last_slot, enforce_caps=True)

        if state.remaining > 0:
            before = len(state.entries)
            for name, target in plan.items():
                state.take(
                    rankings[name],
                    max(0, target - realized[name]),
                    name,
                    enforce_caps=False,
                )
            state.take(leftovers, state.remaining, last_slot, enforce_caps=False)
            diversity_relaxed = len(state.entries) > before
            if diversity_relaxed:
                logger.info(
                    "Relaxed diversity caps to fill the %s hero pool", kind.value
                )

    return state.entries, plan, realized, diversity_relaxed


def local_artwork(item: CandidateItem) -> ArtworkReference:
    return ArtworkReference(
        poster=normalize_image_path(item.poster),
        backdrops=dedupe_images([item.backdrop]),
        source="local",
    )


def merge_artwork(enriched: ArtworkReference, fallback: ArtworkReference) -> ArtworkReference:
    return ArtworkReference(
        poster=enriched.poster or fallback.poster,
        backdrops=dedupe_images([*enriched.backdrops, *fallback.backdrops]),
        source="tmdb",
    )


async def allocate(
    candidates: Sequence[CandidateItem],
    policy: HeroPolicy,
    rate_limit: RateLimitState | None = None,
    *,
    kind: MediaKind | str,
    enricher: ArtworkEnricher | None = None,
    previous_ids: Iterable[str] | None = None,
    now: int | None = None,
) -> PoolResult:
    """Build a diversified, quota-driven hero pool for one kind.

    Under-filled slots never fail the allocation; the missing counts are
    reported in ``meta.shortfall``. Raises :class:`SourceUnavailable` only
    when there are no candidates at all and the policy requires a minimum
    pool size.
    """

    normalized = normalize_kind(kind)
    timestamp = now_ms() if now is None else now
    if not candidates and policy.rotation.min_pool_size > 0:
        raise SourceUnavailable(normalized.value)

    entries, plan, realized, relaxed = select_entries(
        candidates, policy, normalized, previous_ids=previous_ids, now=timestamp
    )

    initial_state = (rate_limit or RateLimitState()).model_copy()
    enrichment_enabled = bool(enricher is not None and enricher.is_enabled)
    skip_enrichment = initial_state.active
    hit_limit = False
    latest_state = initial_state

    pool: list[PoolEntry] = []
    for slot, item in entries:
        artwork = local_artwork(item)
        if enrichment_enabled and not skip_enrichment and not hit_limit:
            # Earlier calls in this run may have tripped the limit.
            latest_state = enricher.get_rate_limit_state()
            if latest_state.active:
                hit_limit = True
            else:
                try:
                    enriched = await enricher.enrich(item, language=policy.language)
                except UpstreamThrottled as exc:
                    logger.warning(
                        "Enrichment throttled while building %s pool: %s",
                        normalized.value,
                        exc,
                    )
                    hit_limit = True
                    latest_state = enricher.get_rate_limit_state()
                except Exception as exc:
                    logger.warning("Enrichment failed for %s: %s", item.id, exc)
                else:
                    if enriched is not None:
                        artwork = merge_artwork(enriched, artwork)
        pool.append(PoolEntry(pool_id=item.id, slot=slot, item=item, artwork=artwork))

    if enrichment_enabled and not skip_enrichment:
        latest_state = enricher.get_rate_limit_state()

    shortfall = {
        name: target - realized.get(name, 0)
        for name, target in plan.items()
        if target - realized.get(name, 0) > 0
    }
    if shortfall:
        logger.info(
            "Hero pool for %s is short of its plan: %s", normalized.value, shortfall
        )

    return PoolResult(
        kind=normalized,
        items=pool,
        updated_at=timestamp,
        expires_at=timestamp + policy.cache.ttl_ms,
        from_cache=False,
        policy_hash=policy.selection_hash(normalized),
        slot_summary=dict(realized),
        matches_policy=True,
        meta=PoolMeta(
            source="fresh",
            plan=plan,
            total_candidates=len(candidates),
            selection_count=len(pool),
            shortfall=shortfall,
            diversity_relaxed=relaxed,
            enrichment=EnrichmentMeta(
                enabled=enrichment_enabled,
                rate_limit=latest_state,
                hit_limit=hit_limit,
            ),
        ),
    )
