"""Deterministic rotation ordering and the autoplay timer."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

from ..models import (
    KIND_SEED_OFFSETS,
    MediaKind,
    PipelineSnapshot,
    PoolEntry,
    normalize_kind,
)
from ..utils import DAY_MS, day_seed, now_ms

logger = logging.getLogger(__name__)

PAUSE_HIDDEN = "hidden"
PAUSE_MANUAL = "manual"
PAUSE_PIPELINE = "pipeline"


@dataclass(frozen=True, slots=True)
class RotationPlan:
    """Display order for one kind plus the entry to start from."""

    kind: MediaKind
    items: tuple[PoolEntry, ...]
    start_index: int
    suppressed: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "items": [entry.model_dump(mode="json", by_alias=True) for entry in self.items],
            "startIndex": self.start_index,
            "suppressed": self.suppressed,
        }


def rotation_seed(kind: MediaKind, updated_at: int, now: int) -> int:
    """Changes when the UTC day or the pool's update day changes."""

    return day_seed(now, KIND_SEED_OFFSETS[kind]) + max(0, updated_at) // DAY_MS


def sort_entries(entries: Iterable[PoolEntry]) -> tuple[PoolEntry, ...]:
    return tuple(sorted(entries, key=lambda entry: (entry.pool_id.casefold(), entry.pool_id)))


def build_rotation_plan(
    kind: MediaKind | str,
    entries: Iterable[PoolEntry],
    *,
    updated_at: int,
    now: int | None = None,
    min_pool_size: int = 0,
) -> RotationPlan:
    normalized = normalize_kind(kind)
    items = sort_entries(entries)
    timestamp = now_ms() if now is None else now
    start_index = rotation_seed(normalized, updated_at, timestamp) % len(items) if items else 0
    return RotationPlan(
        kind=normalized,
        items=items,
        start_index=start_index,
        suppressed=not items or len(items) < min_pool_size,
    )


class RotationSource(Protocol):
    """The orchestrator surface the autoplay loop listens to."""

    @property
    def active_kind(self) -> MediaKind:
        ...

    def get_snapshot(self) -> PipelineSnapshot:
        ...

    def get_rotation_plan(self, kind: MediaKind | str) -> RotationPlan:
        ...

    def subscribe(self, listener: Callable[[PipelineSnapshot], None]) -> Callable[[], None]:
        ...


class HeroAutoplay:
    """Advances through a rotation plan on a fixed-duration timer.

    ``step`` is the only place progress and index change; the background task
    merely calls it every tick. Pause reasons are tracked as a set and time
    spent paused is never counted towards progress.
    """

    def __init__(
        self,
        pipeline: RotationSource,
        kind: MediaKind | str | None = None,
        *,
        duration_seconds: float = 15.0,
        tick_seconds: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        self._pipeline = pipeline
        self._kind = normalize_kind(kind) if kind is not None else pipeline.active_kind
        self._duration = duration_seconds
        self._tick = tick_seconds
        self._clock = clock
        self._items: tuple[PoolEntry, ...] = ()
        self._start_index = 0
        self._index = 0
        self._progress = 0.0
        self._pause_reasons: set[str] = set()
        self._last_ts: float | None = None
        self._plan_key: tuple[Any, ...] | None = None
        self._task: asyncio.Task[None] | None = None
        self._destroyed = False
        self._unsubscribe: Callable[[], None] | None = pipeline.subscribe(self._on_snapshot)
        self._sync(pipeline.get_snapshot())

    @property
    def kind(self) -> MediaKind:
        return self._kind

    @property
    def index(self) -> int:
        return self._index

    @property
    def progress(self) -> float:
        return min(1.0, max(0.0, self._progress))

    @property
    def items(self) -> tuple[PoolEntry, ...]:
        return self._items

    @property
    def current(self) -> PoolEntry | None:
        if not self._items:
            return None
        return self._items[self._index]

    @property
    def pause_reasons(self) -> frozenset[str]:
        return frozenset(self._pause_reasons)

    @property
    def paused(self) -> bool:
        return bool(self._pause_reasons)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the tick task on the running event loop."""

        if self._destroyed:
            raise RuntimeError("Autoplay has been destroyed")
        if self.running:
            return
        self._last_ts = None
        self._task = asyncio.create_task(self._run())

    def step(self, now: float | None = None) -> bool:
        """Advance the timer to ``now``; returns whether the entry changed."""

        if self._destroyed:
            return False
        timestamp = self._clock() if now is None else now
        if self._pause_reasons or not self._items:
            self._last_ts = None
            return False
        if self._last_ts is None:
            self._last_ts = timestamp
            return False

        elapsed = max(0.0, timestamp - self._last_ts)
        self._last_ts = timestamp
        self._progress = min(1.0, self._progress + elapsed / self._duration)
        if self._progress < 1.0:
            return False
        self._index = (self._index + 1) % len(self._items)
        self._progress = 0.0
        return True

    def pause(self) -> None:
        self._add_reason(PAUSE_MANUAL)

    def resume(self) -> None:
        self._remove_reason(PAUSE_MANUAL)

    def set_hidden(self, hidden: bool) -> None:
        if hidden:
            self._add_reason(PAUSE_HIDDEN)
        else:
            self._remove_reason(PAUSE_HIDDEN)

    def reset(self) -> None:
        """Return to the plan's start entry with empty progress."""

        self._index = self._start_index if self._items else 0
        self._progress = 0.0
        self._last_ts = None

    def set_kind(self, kind: MediaKind | str) -> None:
        normalized = normalize_kind(kind)
        if normalized is self._kind:
            return
        self._kind = normalized
        self._plan_key = None
        self._sync(self._pipeline.get_snapshot())

    def destroy(self) -> None:
        """Stop the timer and detach from the orchestrator."""

        if self._destroyed:
            return
        self._destroyed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.destroy()
        task, self._task = self._task, None
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while not self._destroyed:
            self.step()
            await asyncio.sleep(self._tick)

    def _on_snapshot(self, snapshot: PipelineSnapshot) -> None:
        if self._destroyed:
            return
        self._sync(snapshot)

    def _sync(self, snapshot: PipelineSnapshot) -> None:
        status = snapshot.status[self._kind]
        plan = self._pipeline.get_rotation_plan(self._kind)
        key = (
            status.updated_at,
            status.policy_hash,
            tuple(entry.pool_id for entry in plan.items),
        )
        if key != self._plan_key:
            self._plan_key = key
            self._items = plan.items
            self._start_index = plan.start_index
            self.reset()

        busy = (
            not snapshot.enabled
            or not status.settled
            or status.regenerating
            or not plan.items
            or plan.suppressed
        )
        if busy:
            self._add_reason(PAUSE_PIPELINE)
        else:
            self._remove_reason(PAUSE_PIPELINE)

    def _add_reason(self, reason: str) -> None:
        if reason in self._pause_reasons:
            return
        self._pause_reasons.add(reason)
        self._last_ts = None
        logger.debug("Autoplay for %s paused (%s)", self._kind.value, reason)

    def _remove_reason(self, reason: str) -> None:
        if reason not in self._pause_reasons:
            return
        self._pause_reasons.discard(reason)
        self._last_ts = None
