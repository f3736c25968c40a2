"""Hero policy models and loading."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import MediaKind, normalize_kind
from .utils import clamp, round_half_up

logger = logging.getLogger(__name__)

QUOTA_TOLERANCE = 1e-9


class PolicyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SlotPolicy(PolicyModel):
    quota: float = Field(default=0.0, ge=0, le=1)


@dataclass(frozen=True, slots=True)
class DiversityCaps:
    """Per-pool count limits derived from the diversity policy."""

    per_genre: int
    per_year: int


class DiversityPolicy(PolicyModel):
    """Diversity weights; explicit caps win over the weight-derived counts."""

    genre: float = Field(default=0.4, ge=0, le=1)
    year: float = Field(default=0.35, ge=0, le=1)
    anti_repeat: float = Field(default=0.25, ge=0, le=1)
    genre_cap: int | None = Field(default=None, ge=1)
    year_cap: int | None = Field(default=None, ge=1)

    def caps(self, pool_size: int) -> DiversityCaps:
        return DiversityCaps(
            per_genre=self.genre_cap or self._weight_to_count(self.genre, 0.4, pool_size),
            per_year=self.year_cap or self._weight_to_count(self.year, 0.35, pool_size),
        )

    @staticmethod
    def _weight_to_count(weight: float, fallback: float, pool_size: int) -> int:
        effective = clamp(weight or fallback, 0.1, 0.9)
        share = clamp(effective * 0.5, 0.1, 0.35)
        return max(1, round_half_up(pool_size * share))


class RotationPolicy(PolicyModel):
    interval_minutes: int = Field(default=360, ge=1)
    min_pool_size: int = Field(default=6, ge=0)


class TextClampPolicy(PolicyModel):
    title: int = Field(default=96, ge=1)
    subtitle: int = Field(default=240, ge=1)
    summary: int = Field(default=220, ge=1)


class FallbackPolicy(PolicyModel):
    prefer: MediaKind = MediaKind.MOVIES
    allow_duplicates: bool = False

    @field_validator("prefer", mode="before")
    @classmethod
    def _normalize_prefer(cls, value: object) -> object:
        return normalize_kind(value)


class CachePolicy(PolicyModel):
    ttl_hours: float = Field(default=24, gt=0)
    grace_minutes: float = Field(default=15, ge=0)
    max_stale_minutes: float | None = Field(default=None, ge=0)

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl_hours * 60 * 60 * 1000)

    @property
    def grace_ms(self) -> int:
        return int(self.grace_minutes * 60 * 1000)

    @property
    def max_stale_ms(self) -> int | None:
        if self.max_stale_minutes is None:
            return None
        return int(self.max_stale_minutes * 60 * 1000)


class FeaturePolicy(PolicyModel):
    hero_pipeline: bool | None = None


def _default_slots() -> dict[str, SlotPolicy]:
    return {
        "new": SlotPolicy(quota=0.3),
        "topRated": SlotPolicy(quota=0.3),
        "oldButGold": SlotPolicy(quota=0.2),
        "random": SlotPolicy(quota=0.2),
    }


class HeroPolicy(PolicyModel):
    """Versioned configuration controlling hero pool selection and caching."""

    pool_size_movies: int = Field(default=10, ge=0, le=100)
    pool_size_series: int = Field(default=10, ge=0, le=100)
    slots: dict[str, SlotPolicy] = Field(default_factory=_default_slots)
    diversity: DiversityPolicy = Field(default_factory=DiversityPolicy)
    rotation: RotationPolicy = Field(default_factory=RotationPolicy)
    text_clamp: TextClampPolicy = Field(default_factory=TextClampPolicy)
    fallback: FallbackPolicy = Field(default_factory=FallbackPolicy)
    language: str = "en-US"
    cache: CachePolicy = Field(default_factory=CachePolicy)
    features: FeaturePolicy = Field(default_factory=FeaturePolicy)

    @field_validator("slots", mode="before")
    @classmethod
    def _parse_slots(cls, value: object) -> object:
        """Accept ``{"new": 0.3}`` shorthand next to ``{"new": {"quota": 0.3}}``."""

        if value is None:
            return _default_slots()
        if not isinstance(value, dict):
            raise TypeError("slots must be a mapping of slot names to quotas")
        parsed: dict[str, object] = {}
        for name, entry in value.items():
            key = str(name).strip()
            if not key:
                continue
            if isinstance(entry, (int, float)) and not isinstance(entry, bool):
                entry = {"quota": entry}
            parsed[key] = entry
        return parsed

    @field_validator("language", mode="before")
    @classmethod
    def _default_language(cls, value: object) -> object:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "en-US"

    @model_validator(mode="after")
    def _check_quotas(self) -> "HeroPolicy":
        if not self.slots:
            raise ValueError("At least one slot must be configured")
        total = sum(slot.quota for slot in self.slots.values())
        if total > 1.0 + QUOTA_TOLERANCE:
            raise ValueError("Slot quotas must sum to at most 1.0")
        return self

    def pool_size(self, kind: MediaKind) -> int:
        if kind is MediaKind.SERIES:
            return self.pool_size_series
        return self.pool_size_movies

    def selection_fingerprint(self, kind: MediaKind) -> dict[str, Any]:
        """Return the policy fields that influence which items are selected."""

        return {
            "kind": kind.value,
            "poolSize": self.pool_size(kind),
            "slots": [[name, slot.quota] for name, slot in self.slots.items()],
            "diversity": self.diversity.model_dump(mode="json", by_alias=True),
        }

    def selection_hash(self, kind: MediaKind) -> str:
        """Content hash of :meth:`selection_fingerprint` used to key caches."""

        encoded = json.dumps(
            self.selection_fingerprint(kind), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


DEFAULT_POLICY = HeroPolicy()


def load_policy(path: str | os.PathLike[str] | None) -> HeroPolicy:
    """Read a policy file, falling back to the defaults when it is unusable."""

    if not path:
        return HeroPolicy()
    try:
        raw = Path(path).read_text(encoding="utf-8")
        return HeroPolicy.model_validate(json.loads(raw))
    except FileNotFoundError:
        logger.info("Hero policy %s not found, using defaults", path)
    except (OSError, ValueError) as exc:
        # ValidationError and JSONDecodeError are both ValueErrors.
        detail = exc.errors() if isinstance(exc, ValidationError) else exc
        logger.warning("Falling back to default hero policy (%s): %s", path, detail)
    return HeroPolicy()


class PolicyLoader:
    """Reloads the policy file whenever its path or mtime changes."""

    def __init__(self, path: str | os.PathLike[str] | None):
        self._path = Path(path) if path else None
        self._policy: HeroPolicy | None = None
        self._mtime: float | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self, *, force: bool = False) -> HeroPolicy:
        mtime: float | None = None
        if self._path is not None:
            try:
                mtime = self._path.stat().st_mtime
            except FileNotFoundError:
                mtime = None
            except OSError as exc:
                logger.warning("Failed to read hero policy metadata for %s: %s", self._path, exc)
                mtime = None

        if force or self._policy is None or mtime != self._mtime:
            self._policy = load_policy(self._path if mtime is not None else None)
            self._mtime = mtime
        return self._policy
