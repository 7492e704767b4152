"""
Transition Selector: one state-machine step during replay.

Without a live event stream, an EVENT transition can only be taken when its
trigger is *implied* by historical facts.  The first candidate (by priority)
whose trigger is implied and whose conditions pass is selected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from lifecycle_engine.evaluator import evaluate_conditions
from lifecycle_engine.models import (
    BLOCKED_STATE_NAME,
    EVENT_BOT_START,
    EVENT_FIRST_GENERATION,
    EVENT_GENERATION_COMPLETED,
    EVENT_PAYMENT_COMPLETED,
    EVENT_USER_BLOCKED,
    EVENT_USER_UNBLOCKED,
    TRIGGER_TIME,
    Context,
    FSMState,
    FSMTransition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepResult:
    transition: Optional[FSMTransition]
    evaluated:  int                     # candidates examined

    @property
    def matched(self) -> bool:
        return self.transition is not None


def is_trigger_implied(
    transition: FSMTransition,
    ctx: Context,
    blocked: bool,
    current_state: FSMState,
    blocked_state_name: str = BLOCKED_STATE_NAME,
) -> bool:
    """Could this transition's trigger already have fired, judging by history alone?"""
    if transition.trigger_type == TRIGGER_TIME:
        return False

    event = transition.trigger_event
    if event == EVENT_BOT_START:
        return True
    if event == EVENT_PAYMENT_COMPLETED:
        return ctx.total_payments > 0
    if event in (EVENT_FIRST_GENERATION, EVENT_GENERATION_COMPLETED):
        return ctx.total_generations > 0
    if event == EVENT_USER_BLOCKED:
        return blocked
    if event == EVENT_USER_UNBLOCKED:
        return not blocked and current_state.name == blocked_state_name

    # Unknown or unnamed events only count when guarded by conditions
    return len(transition.conditions) > 0


def _id_key(transition_id: str) -> Tuple[int, int, str]:
    # Numeric ids in numeric order, ahead of any non-numeric id
    if transition_id.isascii() and transition_id.isdigit():
        return (0, int(transition_id), transition_id)
    return (1, 0, transition_id)


def order_candidates(transitions: Sequence[FSMTransition]) -> List[FSMTransition]:
    """Highest priority first; equal priorities ordered by transition id."""
    return sorted(transitions, key=lambda t: (-t.priority, _id_key(t.id)))


def select_transition(
    current_state: FSMState,
    transitions: Sequence[FSMTransition],
    ctx: Context,
    blocked: bool = False,
    blocked_state_name: str = BLOCKED_STATE_NAME,
) -> StepResult:
    evaluated = 0
    for transition in order_candidates(transitions):
        evaluated += 1
        if not is_trigger_implied(transition, ctx, blocked, current_state, blocked_state_name):
            logger.debug(
                "Transition %s (%s) not implied for user %s",
                transition.id, transition.trigger_event or transition.trigger_type,
                ctx.user_id,
            )
            continue
        if evaluate_conditions(transition.conditions, ctx):
            logger.debug(
                "Selected transition %s: %s -> %s (priority=%d)",
                transition.id, transition.from_state_id, transition.to_state_id,
                transition.priority,
            )
            return StepResult(transition, evaluated)
    return StepResult(None, evaluated)
