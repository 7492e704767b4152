"""
Context Builder: raw user facts -> derived ``Context`` snapshot.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from lifecycle_engine.config import EngineConfig
from lifecycle_engine.models import (
    LOW_BALANCE_THRESHOLD,
    MS_PER_DAY,
    MS_PER_HOUR,
    Context,
    UserFacts,
    utcnow,
)
from lifecycle_engine.store import FactsStore, call_with_timeout

logger = logging.getLogger(__name__)


def _elapsed(now: datetime, ts: Optional[datetime], unit_ms: int) -> Optional[float]:
    if ts is None:
        return None
    return (now - ts).total_seconds() * 1000 / unit_ms


def build_context(
    facts: UserFacts,
    now: Optional[datetime] = None,
    low_balance_threshold: int = LOW_BALANCE_THRESHOLD,
) -> Context:
    """Derive a Context from facts; pure given ``now``."""
    now = now or utcnow()
    total_payments = facts.completed_purchase_count
    last_paid = facts.last_completed_purchase_at
    last_failed = facts.last_failed_purchase_at

    last_payment_failed = last_failed is not None and (
        last_paid is None or last_failed > last_paid
    )
    return Context(
        user_id=facts.user_id,
        credits=facts.credits,
        total_generations=facts.total_generated,
        total_payments=total_payments,
        created_at=facts.created_at,
        last_payment_failed=last_payment_failed,
        is_paid_user=total_payments > 0,
        is_low_balance=facts.credits < low_balance_threshold,
        days_since_created=_elapsed(now, facts.created_at, MS_PER_DAY),
        tags=tuple(facts.tags),
        last_generation_at=facts.last_generation_at,
        last_payment_at=last_paid,
        preferred_model=facts.last_generation_model,
        hours_since_last_pay=_elapsed(now, last_paid, MS_PER_HOUR),
        hours_since_last_gen=_elapsed(now, facts.last_generation_at, MS_PER_HOUR),
        hours_since_last_activity=_elapsed(now, facts.last_active_at, MS_PER_HOUR),
        active_overlays=tuple(facts.active_overlays),
    )


class ContextBuilder:
    """Fetches facts through the injected store and derives contexts."""

    def __init__(self, store: FactsStore, config: Optional[EngineConfig] = None) -> None:
        self.store = store
        self.config = config or EngineConfig()

    def fetch_facts(self, user_id: str) -> Optional[UserFacts]:
        return call_with_timeout(
            self.store.get_user_facts, user_id,
            timeout=self.config.io_timeout_seconds,
        )

    def from_facts(self, facts: UserFacts, now: Optional[datetime] = None) -> Context:
        return build_context(facts, now, self.config.low_balance_threshold)

    def for_user(self, user_id: str, now: Optional[datetime] = None) -> Optional[Context]:
        facts = self.fetch_facts(user_id)
        if facts is None:
            logger.warning("No facts for user %s", user_id)
            return None
        return self.from_facts(facts, now)
