"""Per-process engine context shared by the hero pool components."""

from __future__ import annotations

import logging
from typing import Callable

from ..config import Settings
from ..models import ALL_KINDS, MediaKind, normalize_kind
from ..policy import HeroPolicy, PolicyLoader
from ..utils import now_ms

logger = logging.getLogger(__name__)


class EngineContext:
    """Holds the active policy, its per-kind hashes and the clock.

    One instance is built per process (or per test) and handed to the cache,
    the orchestrator and the rotation helpers instead of module globals.
    """

    def __init__(
        self,
        settings: Settings,
        policy: HeroPolicy | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        policy_loader: PolicyLoader | None = None,
    ):
        self.settings = settings
        self.clock = clock
        self._loader = policy_loader
        if policy is None:
            policy = policy_loader.load() if policy_loader else HeroPolicy()
        self._policy = policy
        self._hashes = self._compute_hashes(policy)

    @property
    def policy(self) -> HeroPolicy:
        return self._policy

    def now(self) -> int:
        return self.clock()

    def policy_hash(self, kind: MediaKind | str) -> str:
        return self._hashes[normalize_kind(kind)]

    def set_policy(self, policy: HeroPolicy) -> set[MediaKind]:
        """Swap the policy and return the kinds whose selection hash changed."""

        previous = self._hashes
        self._policy = policy
        self._hashes = self._compute_hashes(policy)
        changed = {kind for kind in ALL_KINDS if previous[kind] != self._hashes[kind]}
        if changed:
            logger.info(
                "Hero policy changed selection for %s",
                ", ".join(sorted(kind.value for kind in changed)),
            )
        return changed

    def reload_policy(self, *, force: bool = False) -> set[MediaKind]:
        """Re-read the policy file when one is configured."""

        if self._loader is None:
            return set()
        policy = self._loader.load(force=force)
        if policy is self._policy:
            return set()
        return self.set_policy(policy)

    @staticmethod
    def _compute_hashes(policy: HeroPolicy) -> dict[MediaKind, str]:
        return {kind: policy.selection_hash(kind) for kind in ALL_KINDS}
