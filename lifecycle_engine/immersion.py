"""
The Immersion Engine — state replay over historical facts.

Starting from a version's initial state, the Transition Selector is applied
repeatedly until a terminal state is reached, no transition matches, or the
step bound is hit.  Transition actions are never executed here; the only side
effect is the final upsert of the user's state assignment, so re-running
immersion over the same facts is idempotent.

Usage:
    engine = ImmersionEngine(store)
    result = engine.immerse_user("u-1", version_id=1)
    summary = engine.immerse_all()
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from lifecycle_engine.config import EngineConfig
from lifecycle_engine.context import build_context
from lifecycle_engine.models import FSMState, UserFSMState, utcnow
from lifecycle_engine.selector import select_transition
from lifecycle_engine.state import compute_assignments_hash
from lifecycle_engine.store import FactsStore, call_with_timeout

logger = logging.getLogger(__name__)

STOP_TERMINAL  = "TERMINAL"
STOP_NO_MATCH  = "NO_MATCH"
STOP_MAX_DEPTH = "MAX_DEPTH"


@dataclass(frozen=True, slots=True)
class ImmersionResult:
    user_id:     str
    version_id:  int
    state_id:    str
    state_name:  str
    path:        Tuple[str, ...]      # state names visited, initial first
    steps:       int
    stop_reason: str


@dataclass(slots=True)
class BatchSummary:
    version_id: int
    processed:  int = 0
    skipped:    int = 0
    by_state:   Dict[str, int] = field(default_factory=dict)


class ImmersionEngine:
    """Replays users through a version's transition graph."""

    def __init__(
        self,
        store: FactsStore,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def immerse_user(self, user_id: str, version_id: int) -> Optional[ImmersionResult]:
        """Infer and persist the user's current state; None when nothing was written."""
        logger.info("Starting immersion for user %s (version %d)", user_id, version_id)

        facts = self._read(self.store.get_user_facts, user_id)
        if facts is None:
            logger.warning("Immersion skipped: user %s not found", user_id)
            return None

        initial = self._read(self.store.get_initial_state, version_id)
        if initial is None:
            logger.warning(
                "Immersion skipped: version %d has no initial state", version_id
            )
            return None

        now = self.clock()
        ctx = build_context(facts, now, self.config.low_balance_threshold)

        current: FSMState = initial
        path: List[str] = [current.name]
        steps = 0
        stop_reason = STOP_TERMINAL if current.is_terminal else STOP_MAX_DEPTH

        while not current.is_terminal and steps < self.config.max_depth:
            candidates = self._read(self.store.get_transitions, current.id, version_id)
            step = select_transition(
                current, candidates, ctx,
                blocked=facts.is_blocked,
                blocked_state_name=self.config.blocked_state_name,
            )
            if not step.matched:
                stop_reason = STOP_NO_MATCH
                break

            target = self._read(self.store.get_state, step.transition.to_state_id)
            if target is None:
                raise ValueError(
                    f"Transition {step.transition.id!r} points to unknown state "
                    f"{step.transition.to_state_id!r}"
                )
            current = target
            steps += 1
            path.append(current.name)
            if current.is_terminal:
                stop_reason = STOP_TERMINAL

        if stop_reason == STOP_MAX_DEPTH:
            logger.warning(
                "Immersion for user %s hit max depth %d at state %s",
                user_id, self.config.max_depth, current.name,
            )

        self._read(
            self.store.upsert_user_state,
            UserFSMState(user_id=user_id, state_id=current.id,
                         version_id=version_id, entered_at=now),
        )
        logger.info(
            "Immersion complete: user=%s state=%s steps=%d reason=%s",
            user_id, current.name, steps, stop_reason,
        )
        return ImmersionResult(
            user_id=user_id,
            version_id=version_id,
            state_id=current.id,
            state_name=current.name,
            path=tuple(path),
            steps=steps,
            stop_reason=stop_reason,
        )

    def resolve_version(self, version_id: Optional[int] = None) -> int:
        """Return ``version_id`` or the active version's id."""
        if version_id is not None:
            return version_id
        active = self._read(self.store.get_active_version)
        if active is None:
            raise LookupError("No active FSM version")
        return active.id

    def immerse_all(
        self,
        version_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> BatchSummary:
        """Immerse up to ``limit`` users (newest first) into a version."""
        target = self.resolve_version(version_id)
        if limit is None:
            limit = self.config.immersion_batch_limit
        user_ids = self._read(self.store.list_user_ids, limit)

        summary = BatchSummary(version_id=target)
        counts: Counter = Counter()
        for user_id in user_ids:
            result = self.immerse_user(user_id, target)
            if result is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            counts[result.state_name] += 1

        summary.by_state = dict(sorted(counts.items()))
        logger.info(
            "Batch immersion done: version=%d processed=%d skipped=%d",
            target, summary.processed, summary.skipped,
        )
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _read(self, fn, *args):
        return call_with_timeout(fn, *args, timeout=self.config.io_timeout_seconds)


def verify_replay(
    engine: ImmersionEngine,
    expected_hash: str,
    version_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Re-run immersion for every user and compare the assignments hash.
    Returns (match, actual_hash).
    """
    logger.info("Replay mode: re-immersing users")
    summary = engine.immerse_all(version_id, limit)
    actual = compute_assignments_hash(engine.store.list_user_states(summary.version_id))

    match = actual == expected_hash
    if match:
        logger.info("Replay PASSED: hash=%s", actual)
    else:
        logger.error("Replay FAILED: expected=%s actual=%s", expected_hash, actual)
    return match, actual
