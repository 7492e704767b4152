"""
Transition actions and the dispatch boundary.

Typed payloads and their wire adapter live in ``models``.  Delivery is the
dispatcher's job: this module only decides what to hand over and reports the
dispatcher's answer.  Nothing is retried here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from lifecycle_engine.context import ContextBuilder
from lifecycle_engine.evaluator import evaluate_conditions
from lifecycle_engine.models import (
    ACTION_NO_ACTION,
    ACTION_TYPES,
    Action,
    ActionConfig,
    Condition,
    FSMTransition,
    action_config_from_dict,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dispatch boundary
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ActionResult:
    success: bool
    error:   Optional[str] = None
    skipped: bool = False


# (user_id, action_type, config) -> ActionResult
ActionDispatcher = Callable[[str, str, ActionConfig], ActionResult]


def ordered_actions(transition: FSMTransition) -> List[Action]:
    return sorted(transition.actions, key=lambda a: a.order)


def dispatch_action(dispatcher: ActionDispatcher, user_id: str, action: Action) -> ActionResult:
    """Hand one action to the dispatcher; its exceptions become failed results."""
    try:
        result = dispatcher(user_id, action.type, action.config)
    except Exception as exc:
        logger.warning(
            "Dispatch of %s for user %s raised: %s", action.type, user_id, exc,
        )
        return ActionResult(success=False, error=str(exc))
    if not result.success:
        logger.warning(
            "Dispatch of %s for user %s failed: %s", action.type, user_id, result.error,
        )
    return result


def dispatch_transition_actions(
    dispatcher: ActionDispatcher,
    user_id: str,
    transition: FSMTransition,
) -> List[ActionResult]:
    """Dispatch a transition's actions in ``order``; NO_ACTION entries are skipped."""
    results = []
    for action in ordered_actions(transition):
        if action.type == ACTION_NO_ACTION:
            results.append(ActionResult(success=True, skipped=True))
            continue
        results.append(dispatch_action(dispatcher, user_id, action))
    return results


def dispatch_manual_action(
    builder: ContextBuilder,
    dispatcher: ActionDispatcher,
    user_id: str,
    action_type: str,
    config: Dict[str, Any],
    conditions: Sequence[Condition] = (),
) -> ActionResult:
    """
    Operator-triggered action for one user, gated by optional conditions.
    Users whose context fails the conditions are skipped, not failed.
    """
    if action_type not in ACTION_TYPES:
        return ActionResult(success=False, error=f"Invalid action type: {action_type}")
    try:
        action = Action(action_type, action_config_from_dict(action_type, config))
    except ValueError as exc:
        return ActionResult(success=False, error=str(exc))

    ctx = builder.for_user(user_id)
    if ctx is None:
        return ActionResult(success=False, error="User not found")
    if conditions and not evaluate_conditions(conditions, ctx):
        logger.debug("Manual %s skipped for user %s: conditions not met", action_type, user_id)
        return ActionResult(success=False, error="Conditions not met", skipped=True)

    return dispatch_action(dispatcher, user_id, action)


@dataclass(slots=True)
class BulkDispatchSummary:
    processed:     int = 0
    success_count: int = 0
    fail_count:    int = 0
    skipped_count: int = 0
    limit_reached: bool = False
    results:       Dict[str, ActionResult] = field(default_factory=dict)


def dispatch_bulk(
    builder: ContextBuilder,
    dispatcher: ActionDispatcher,
    user_ids: Sequence[str],
    action_type: str,
    config: Dict[str, Any],
    conditions: Sequence[Condition] = (),
    batch_limit: Optional[int] = None,
) -> BulkDispatchSummary:
    """Run ``dispatch_manual_action`` for at most ``batch_limit`` users."""
    if not user_ids:
        raise ValueError("No users provided")
    limit = builder.config.action_batch_limit if batch_limit is None else batch_limit

    summary = BulkDispatchSummary(limit_reached=len(user_ids) > limit)
    for user_id in user_ids[:limit]:
        result = dispatch_manual_action(
            builder, dispatcher, user_id, action_type, config, conditions,
        )
        summary.results[user_id] = result
        summary.processed += 1
        if result.success:
            summary.success_count += 1
        elif result.skipped:
            summary.skipped_count += 1
        else:
            summary.fail_count += 1

    logger.info(
        "Bulk %s: processed=%d ok=%d failed=%d skipped=%d",
        action_type, summary.processed, summary.success_count,
        summary.fail_count, summary.skipped_count,
    )
    return summary
