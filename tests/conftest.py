"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``heroreel``
# sits at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from heroreel.models import CandidateItem, MediaKind  # noqa: E402
from heroreel.policy import HeroPolicy  # noqa: E402
from heroreel.utils import DAY_MS  # noqa: E402

# 2024-06-10T06:13:20Z
NOW_MS = 1_718_000_000_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = NOW_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += milliseconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scenario_candidates() -> list[CandidateItem]:
    """Eight movies with overlapping genres and years."""

    rows = [
        ("m1", 5, 2024, 8.9, ["Action", "Adventure"]),
        ("m2", 8, 2023, 8.4, ["Action", "Thriller"]),
        ("m3", 10, 2024, 7.5, ["Drama"]),
        ("m4", 180, 2018, 9.2, ["Mystery"]),
        ("m5", 420, 2005, 8.7, ["Classic"]),
        ("m6", 120, 2016, 7.1, ["Comedy"]),
        ("m7", 50, 2019, 6.5, ["Adventure"]),
        ("m8", 210, 2017, 8.85, ["Science Fiction"]),
    ]
    return [
        CandidateItem(
            id=item_id,
            kind=MediaKind.MOVIES,
            title=f"Movie {item_id}",
            added_at=NOW_MS - days * DAY_MS,
            rating=rating,
            genres=genres,
            year=year,
            duration_minutes=110,
            poster=f"/posters/{item_id}.jpg",
            backdrop=f"/backdrops/{item_id}.jpg",
        )
        for item_id, days, year, rating, genres in rows
    ]


@pytest.fixture
def scenario_policy() -> HeroPolicy:
    return HeroPolicy.model_validate(
        {
            "poolSizeMovies": 6,
            "poolSizeSeries": 6,
            "slots": {"new": 0.5, "topRated": 0.3, "oldButGold": 0.2},
            "diversity": {"genre": 1, "year": 1},
            "rotation": {"minPoolSize": 1},
            "cache": {"ttlHours": 6, "graceMinutes": 15},
        }
    )
