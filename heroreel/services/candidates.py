"""Candidate sources feeding the slot allocator."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import MediaRecord
from ..models import CandidateItem, MediaKind, normalize_kind
from ..utils import clamp, parse_timestamp_ms, parse_year

logger = logging.getLogger(__name__)

MEDIA_TYPES: dict[MediaKind, tuple[str, ...]] = {
    MediaKind.MOVIES: ("movie",),
    MediaKind.SERIES: ("tv", "show", "series"),
}


class CandidateSource(Protocol):
    """Anything able to list the catalog items of one kind."""

    async def list_candidates(self, kind: MediaKind) -> list[CandidateItem]:
        ...


def parse_rating(*values: Any) -> float | None:
    """Return the first positive rating, rounded to one decimal and clamped."""

    for value in values:
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if number > 0:
            return clamp(round(number, 1), 0, 10)
    return None


def minutes_from_duration(value: Any) -> int | None:
    """Convert a duration in minutes or milliseconds into whole minutes."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    if number > 1000:
        return max(1, round(number / 60_000))
    return round(number)


def candidate_from_record(record: MediaRecord, kind: MediaKind) -> CandidateItem:
    """Project a stored media row into a :class:`CandidateItem`."""

    genres = list(record.genres or [])[:3]
    return CandidateItem(
        id=record.external_id,
        kind=kind,
        title=(record.title or "").strip(),
        added_at=parse_timestamp_ms(record.added_at or record.created_at),
        rating=parse_rating(record.rating, record.audience_rating),
        genres=genres,
        year=parse_year(record.year),
        duration_minutes=minutes_from_duration(record.duration_ms),
        summary=record.summary,
        poster=record.poster,
        backdrop=record.backdrop,
        tmdb_id=record.tmdb_id,
        imdb_id=record.imdb_id,
    )


class StaticCandidateSource:
    """In-memory candidate source, mainly for fixtures and imports."""

    def __init__(
        self,
        items: Mapping[MediaKind | str, Iterable[CandidateItem | Mapping[str, Any]]]
        | None = None,
    ):
        self._items: dict[MediaKind, list[CandidateItem]] = {
            MediaKind.MOVIES: [],
            MediaKind.SERIES: [],
        }
        for kind, entries in (items or {}).items():
            self.set_items(kind, entries)

    def set_items(
        self,
        kind: MediaKind | str,
        entries: Iterable[CandidateItem | Mapping[str, Any]],
    ) -> None:
        normalized = normalize_kind(kind)
        parsed: list[CandidateItem] = []
        for entry in entries:
            if isinstance(entry, CandidateItem):
                parsed.append(entry)
                continue
            try:
                parsed.append(
                    CandidateItem.model_validate({"kind": normalized, **dict(entry)})
                )
            except ValidationError as exc:
                logger.warning("Skipping malformed %s candidate: %s", normalized.value, exc)
        self._items[normalized] = parsed

    async def list_candidates(self, kind: MediaKind) -> list[CandidateItem]:
        return list(self._items.get(normalize_kind(kind), []))


class DatabaseCandidateSource:
    """Reads candidates from the ``media`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_candidates(self, kind: MediaKind) -> list[CandidateItem]:
        normalized = normalize_kind(kind)
        async with self._session_factory() as session:
            stmt = select(MediaRecord).where(
                MediaRecord.media_type.in_(MEDIA_TYPES[normalized])
            )
            result = await session.execute(stmt)
            records = result.scalars().all()

        candidates: list[CandidateItem] = []
        for record in records:
            try:
                candidates.append(candidate_from_record(record, normalized))
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed media record %s: %s", record.external_id, exc
                )
        return candidates
