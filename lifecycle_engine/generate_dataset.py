"""
Synthetic dataset generator for the Lifecycle Engine.

Produces a dataset JSON holding the default lifecycle graph plus ``count``
users whose histories cover:
  - fresh sign-ups that never generated anything
  - free users at various balances (including freeloaders)
  - paying users, some with a later failed payment
  - long-inactive and blocked users
"""
from __future__ import annotations

import json
import random
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from lifecycle_engine.models import (
    ACTION_GRANT_BURNABLE_BONUS,
    ACTION_SEND_MESSAGE,
    ACTION_SEND_SPECIAL_OFFER,
    ACTION_TAG_USER,
    EVENT_BOT_START,
    EVENT_FIRST_GENERATION,
    EVENT_PAYMENT_COMPLETED,
    EVENT_USER_BLOCKED,
    EVENT_USER_UNBLOCKED,
    TRIGGER_EVENT,
    TRIGGER_TIME,
    Action,
    Condition,
    CustomPackage,
    FSMState,
    FSMTransition,
    FSMVersion,
    GrantBurnableBonusConfig,
    SendMessageConfig,
    SpecialOfferConfig,
    TagUserConfig,
    format_ts,
)

# Fixed reference point so generated histories are reproducible
BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)

LIFECYCLE_STATES: Tuple[Tuple[str, bool, bool], ...] = (
    # name, is_initial, is_terminal
    ("NEW", True, False),
    ("ACTIVATING", False, False),
    ("ACTIVE_FREE", False, False),
    ("PAYWALL", False, False),
    ("PAID_ACTIVE", False, False),
    ("INACTIVE", False, False),
    ("CHURNED", False, True),
    ("BLOCKED", False, False),
)

MODELS = ("flux-schnell", "flux-pro", "sdxl", "imagen-3")


def _sid(version_id: int, name: str) -> str:
    return f"v{version_id}-{name.lower()}"


def default_graph(version_id: int = 1) -> Tuple[FSMVersion, List[FSMState], List[FSMTransition]]:
    """The stock lifecycle graph used by the generator, CLI demos and tests."""
    version = FSMVersion(id=version_id, name=f"lifecycle-v{version_id}", is_active=True)
    states = [
        FSMState(_sid(version_id, name), name, version_id, is_initial, is_terminal)
        for name, is_initial, is_terminal in LIFECYCLE_STATES
    ]

    def t(tid: str, src: str, dst: str, priority: int, event: Optional[str] = None,
          conditions=(), actions=(), trigger_type: str = TRIGGER_EVENT,
          timeout: Optional[int] = None) -> FSMTransition:
        return FSMTransition(
            id=f"v{version_id}-{tid}",
            from_state_id=_sid(version_id, src),
            to_state_id=_sid(version_id, dst),
            version_id=version_id,
            trigger_type=trigger_type,
            trigger_event=event,
            timeout_minutes=timeout,
            priority=priority,
            conditions=tuple(conditions),
            actions=tuple(actions),
        )

    welcome = Action(ACTION_SEND_MESSAGE, SendMessageConfig(message="Welcome aboard!"), 0)
    offer = Action(
        ACTION_SEND_SPECIAL_OFFER,
        SpecialOfferConfig(custom_package=CustomPackage("Starter", 4.99, 100),
                           message="Out of credits? Here is a deal."),
        0,
    )
    bonus = Action(ACTION_GRANT_BURNABLE_BONUS, GrantBurnableBonusConfig(amount=30), 1)
    tag_payer = Action(ACTION_TAG_USER, TagUserConfig(tag="payer"), 0)

    transitions = [
        t("t01", "NEW", "BLOCKED", 100, EVENT_USER_BLOCKED),
        t("t02", "NEW", "ACTIVATING", 10, EVENT_BOT_START, actions=[welcome]),
        t("t03", "ACTIVATING", "BLOCKED", 100, EVENT_USER_BLOCKED),
        t("t04", "ACTIVATING", "PAID_ACTIVE", 50, EVENT_PAYMENT_COMPLETED, actions=[tag_payer]),
        t("t05", "ACTIVATING", "ACTIVE_FREE", 10, EVENT_FIRST_GENERATION),
        t("t06", "ACTIVATING", "CHURNED", 5, conditions=[
            Condition("is_dead", "EQUALS", "true", 0),
            Condition("days_since_created", "GT", "14", 0),
        ]),
        t("t07", "ACTIVE_FREE", "BLOCKED", 100, EVENT_USER_BLOCKED),
        t("t08", "ACTIVE_FREE", "PAID_ACTIVE", 50, EVENT_PAYMENT_COMPLETED, actions=[tag_payer]),
        t("t09", "ACTIVE_FREE", "PAYWALL", 20, "CREDITS_ZERO", conditions=[
            Condition("is_low_balance", "EQUALS", "true", 0),
        ], actions=[offer, bonus]),
        t("t10", "PAYWALL", "PAID_ACTIVE", 50, EVENT_PAYMENT_COMPLETED, actions=[tag_payer]),
        t("t11", "PAYWALL", "CHURNED", 10, "TIMEOUT", conditions=[
            Condition("hours_since_last_activity", "GT", "720", 0),
        ]),
        t("t12", "PAID_ACTIVE", "INACTIVE", 10, "TIMEOUT", conditions=[
            Condition("hours_since_last_activity", "GT", "336", 0),
            Condition("last_payment_failed", "EQUALS", "true", 1),
        ]),
        t("t13", "INACTIVE", "CHURNED", 10, trigger_type=TRIGGER_TIME, timeout=43200),
        t("t14", "BLOCKED", "ACTIVATING", 100, EVENT_USER_UNBLOCKED),
    ]
    return version, states, transitions


def _make_user(rng: random.Random, now: datetime) -> Dict[str, Any]:
    created_at = now - timedelta(hours=rng.randint(1, 24 * 120))
    age_h = max(1, int((now - created_at).total_seconds() // 3600))
    profile = rng.choices(
        ["dead", "free", "freeloader", "payer", "failed_payer", "inactive", "blocked"],
        weights=[15, 25, 15, 20, 8, 12, 5],
    )[0]

    user: Dict[str, Any] = {
        # Seeded rng for deterministic UUIDs
        "id": str(uuid.UUID(int=rng.getrandbits(128), version=4)),
        "credits": rng.randint(20, 200),
        "createdAt": format_ts(created_at),
        "totalGenerated": 0,
        "tags": [],
        "lastActiveAt": format_ts(created_at + timedelta(hours=rng.randint(0, age_h))),
        "isBlocked": profile == "blocked",
        "completedPurchases": 0,
        "lastCompletedPurchaseAt": None,
        "lastFailedPurchaseAt": None,
        "lastGeneration": None,
        "activeOverlays": [],
    }

    if profile != "dead":
        user["totalGenerated"] = rng.randint(1, 60)
        gen_at = created_at + timedelta(hours=rng.randint(0, age_h))
        user["lastGeneration"] = {"createdAt": format_ts(gen_at), "modelId": rng.choice(MODELS)}

    if profile == "freeloader":
        user["credits"] = rng.randint(0, 19)
    elif profile in ("payer", "failed_payer", "inactive"):
        user["completedPurchases"] = rng.randint(1, 5)
        paid_at = created_at + timedelta(hours=rng.randint(0, age_h))
        user["lastCompletedPurchaseAt"] = format_ts(paid_at)
        user["tags"] = ["payer"]
        if profile == "failed_payer":
            user["lastFailedPurchaseAt"] = format_ts(paid_at + timedelta(hours=rng.randint(1, 48)))
        if profile == "inactive":
            idle_since = max(created_at, now - timedelta(days=rng.randint(15, 90)))
            user["lastActiveAt"] = format_ts(idle_since)
            user["lastFailedPurchaseAt"] = format_ts(paid_at + timedelta(hours=1))

    return user


def generate_dataset(output_path: str, count: int = 200, seed: int = 42) -> None:
    """Write a dataset with the default graph and ``count`` synthetic users."""
    rng = random.Random(seed)
    version, states, transitions = default_graph()

    users: List[Dict[str, Any]] = [_make_user(rng, BASE_TIME) for _ in range(count)]

    dataset = {
        "versions": [version.to_dict()],
        "states": [s.to_dict() for s in states],
        "transitions": [t.to_dict() for t in transitions],
        "users": users,
        "assignments": [],
    }

    p = Path(output_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(dataset, f, indent=2, sort_keys=True)
