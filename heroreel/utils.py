"""Utility helpers for the HeroReel service."""

from __future__ import annotations

import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable


DAY_MS = 24 * 60 * 60 * 1000
YEAR_RE = re.compile(r"(19|20|21)\d{2}")
PARENT_SEGMENT_RE = re.compile(r"(^|/)\.\.(/|$)")
PLEX_ART_RE = re.compile(r"/?library/metadata/(\d+)/(thumb|art)/(\d+)")


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""

    return int(time.time() * 1000)


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def round_half_up(value: float) -> int:
    """Round like ``Math.round`` so quota maths never rounds halves to even."""

    return int(math.floor(value + 0.5))


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from numbers or date-ish strings."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if math.isfinite(value) and 1800 < value < 2100:
            return int(value)
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))


def parse_timestamp_ms(value: Any) -> int:
    """Coerce datetimes, ISO strings and epoch seconds/millis into epoch ms."""

    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return 0
        # Values below 10^12 are epoch seconds.
        if value > 1_000_000_000_000:
            return int(value)
        return int(value * 1000)
    text = str(value).strip()
    if not text:
        return 0
    try:
        return parse_timestamp_ms(float(text))
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0
    return parse_timestamp_ms(parsed)


def normalize_image_path(value: Any) -> str | None:
    """Normalise an artwork reference into something the frontend can load."""

    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    candidate = trimmed.replace("\\", "/")
    match = PLEX_ART_RE.search(candidate)
    if match:
        media_id, art_type, stamp = match.groups()
        return f"/api/thumbnails/tautulli/library/metadata/{media_id}/{art_type}/{stamp}"

    lowered = trimmed.lower()
    if lowered.startswith(("http://", "https://", "data:")):
        return trimmed
    if trimmed.startswith("//"):
        return f"https:{trimmed}"
    if PARENT_SEGMENT_RE.search(candidate):
        return None
    if candidate.startswith("api/thumbnails/"):
        return f"/{candidate}"
    while candidate.startswith("./"):
        candidate = candidate[2:]
    return candidate or None


def dedupe_images(values: Iterable[Any]) -> list[str]:
    """Normalise artwork references and drop empties and duplicates."""

    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        candidate = normalize_image_path(value)
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        result.append(candidate)
    return result


def day_of_year(timestamp_ms: int) -> int:
    """Return the 1-based UTC day of the year for an epoch-ms timestamp."""

    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.timetuple().tm_yday


def day_seed(timestamp_ms: int, kind_offset: int = 0) -> int:
    """Seed that changes once per UTC day, shifted per media kind."""

    return day_of_year(timestamp_ms) + kind_offset
