"""
Data models for the Lifecycle Engine.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings on
the wire.  Wire keys are camelCase to match the persisted records.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
LOW_BALANCE_THRESHOLD: int = 20               # credits
MAX_DEPTH: int = 50                           # immersion steps
BLOCKED_STATE_NAME: str = "BLOCKED"
IO_TIMEOUT_SECONDS: float = 5.0
IMMERSION_BATCH_LIMIT: int = 1000
ACTION_BATCH_LIMIT: int = 100

MS_PER_HOUR: int = 1000 * 60 * 60
MS_PER_DAY: int = MS_PER_HOUR * 24


# ---------------------------------------------------------------------------
# Operators (internal enum, string-based for JSON compat)
# ---------------------------------------------------------------------------
OP_EQUALS     = "EQUALS"
OP_NOT_EQUALS = "NOT_EQUALS"
OP_GT         = "GT"
OP_GTE        = "GTE"
OP_LT         = "LT"
OP_LTE        = "LTE"
OP_IN         = "IN"
OP_NOT_IN     = "NOT_IN"
OP_EXISTS     = "EXISTS"
OP_NOT_EXISTS = "NOT_EXISTS"
OP_CONTAINS   = "CONTAINS"

CONDITION_OPERATORS: Tuple[str, ...] = (
    OP_EQUALS, OP_NOT_EQUALS, OP_GT, OP_GTE, OP_LT, OP_LTE,
    OP_IN, OP_NOT_IN, OP_EXISTS, OP_NOT_EXISTS,
)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
TRIGGER_EVENT = "EVENT"
TRIGGER_TIME  = "TIME"

EVENT_BOT_START            = "BOT_START"
EVENT_PAYMENT_COMPLETED    = "PAYMENT_COMPLETED"
EVENT_FIRST_GENERATION     = "FIRST_GENERATION"
EVENT_GENERATION_COMPLETED = "GENERATION_COMPLETED"
EVENT_USER_BLOCKED         = "USER_BLOCKED"
EVENT_USER_UNBLOCKED       = "USER_UNBLOCKED"


# ---------------------------------------------------------------------------
# Action types
# ---------------------------------------------------------------------------
ACTION_SEND_MESSAGE         = "SEND_MESSAGE"
ACTION_GRANT_BURNABLE_BONUS = "GRANT_BURNABLE_BONUS"
ACTION_TAG_USER             = "TAG_USER"
ACTION_SEND_SPECIAL_OFFER   = "SEND_SPECIAL_OFFER"
ACTION_SHOW_TRIPWIRE        = "SHOW_TRIPWIRE"
ACTION_ENABLE_REFERRAL      = "ENABLE_REFERRAL"
ACTION_SWITCH_MODEL_HINT    = "SWITCH_MODEL_HINT"
ACTION_NO_ACTION            = "NO_ACTION"

ACTION_TYPES: Tuple[str, ...] = (
    ACTION_SEND_MESSAGE, ACTION_GRANT_BURNABLE_BONUS, ACTION_TAG_USER,
    ACTION_SEND_SPECIAL_OFFER, ACTION_SHOW_TRIPWIRE, ACTION_ENABLE_REFERRAL,
    ACTION_SWITCH_MODEL_HINT, ACTION_NO_ACTION,
)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------
def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Action payloads (tagged by action type)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CustomPackage:
    name:    str
    price:   float
    credits: int


@dataclass(frozen=True, slots=True)
class GrantBurnableBonusConfig:
    amount:                  int
    expires_in_hours:        int = 24
    condition_generations:   Optional[int] = None
    condition_top_up_amount: Optional[float] = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Bonus amount must be positive, got {self.amount}")
        if self.expires_in_hours <= 0:
            raise ValueError(
                f"expires_in_hours must be positive, got {self.expires_in_hours}"
            )


@dataclass(frozen=True, slots=True)
class SendMessageConfig:
    message:        str
    package_id:     Optional[str] = None
    custom_package: Optional[CustomPackage] = None
    burnable_bonus: Optional[GrantBurnableBonusConfig] = None


@dataclass(frozen=True, slots=True)
class SpecialOfferConfig:
    package_id:     Optional[str] = None
    custom_package: Optional[CustomPackage] = None
    message:        str = ""

    def __post_init__(self) -> None:
        if self.package_id is None and self.custom_package is None:
            raise ValueError("Special offer needs a package_id or a custom_package")


@dataclass(frozen=True, slots=True)
class TagUserConfig:
    tag: str

    def __post_init__(self) -> None:
        if not self.tag.strip():
            raise ValueError("Tag must not be empty")


@dataclass(frozen=True, slots=True)
class TripwireConfig:
    overlay_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ReferralConfig:
    message: str = ""


@dataclass(frozen=True, slots=True)
class ModelHintConfig:
    model_id: str
    message:  str = ""


@dataclass(frozen=True, slots=True)
class NoActionConfig:
    pass


ActionConfig = Union[
    SendMessageConfig, GrantBurnableBonusConfig, TagUserConfig,
    SpecialOfferConfig, TripwireConfig, ReferralConfig, ModelHintConfig,
    NoActionConfig,
]

CONFIG_TYPES: Dict[str, type] = {
    ACTION_SEND_MESSAGE: SendMessageConfig,
    ACTION_GRANT_BURNABLE_BONUS: GrantBurnableBonusConfig,
    ACTION_TAG_USER: TagUserConfig,
    ACTION_SEND_SPECIAL_OFFER: SpecialOfferConfig,
    ACTION_SHOW_TRIPWIRE: TripwireConfig,
    ACTION_ENABLE_REFERRAL: ReferralConfig,
    ACTION_SWITCH_MODEL_HINT: ModelHintConfig,
    ACTION_NO_ACTION: NoActionConfig,
}


# ---------------------------------------------------------------------------
# Wire adapter (opaque map <-> typed payload)
# ---------------------------------------------------------------------------
def _opt_int(value: Any) -> Optional[int]:
    return None if value in (None, "") else int(value)


def _opt_float(value: Any) -> Optional[float]:
    return None if value in (None, "") else float(value)


def _package(d: Optional[Dict[str, Any]]) -> Optional[CustomPackage]:
    if not d:
        return None
    return CustomPackage(
        name=str(d.get("name", "")),
        price=float(d.get("price", 0)),
        credits=int(d.get("credits", 0)),
    )


def _bonus(d: Dict[str, Any]) -> GrantBurnableBonusConfig:
    return GrantBurnableBonusConfig(
        amount=int(d["amount"]),
        expires_in_hours=int(d.get("expiresInHours") or 24),
        condition_generations=_opt_int(d.get("conditionGenerations")),
        condition_top_up_amount=_opt_float(d.get("conditionTopUpAmount")),
    )


def action_config_from_dict(action_type: str, d: Dict[str, Any]) -> ActionConfig:
    """Parse the stored config map for ``action_type``; raises ValueError on bad input."""
    if action_type not in CONFIG_TYPES:
        raise ValueError(f"Invalid action type: {action_type!r}")
    try:
        if action_type == ACTION_SEND_MESSAGE:
            bonus = d.get("burnableBonus") if d.get("includeBonus", "burnableBonus" in d) else None
            offer = d.get("includeOffer", True)
            return SendMessageConfig(
                message=str(d.get("message", "")),
                package_id=d.get("packageId") if offer else None,
                custom_package=_package(d.get("customPackage")) if offer else None,
                burnable_bonus=_bonus(bonus) if bonus else None,
            )
        if action_type == ACTION_GRANT_BURNABLE_BONUS:
            return _bonus(d)
        if action_type == ACTION_TAG_USER:
            return TagUserConfig(tag=str(d["tag"]))
        if action_type == ACTION_SEND_SPECIAL_OFFER:
            return SpecialOfferConfig(
                package_id=d.get("packageId"),
                custom_package=_package(d.get("customPackage")),
                message=str(d.get("message", "")),
            )
        if action_type == ACTION_SHOW_TRIPWIRE:
            return TripwireConfig(overlay_id=d.get("overlayId"))
        if action_type == ACTION_ENABLE_REFERRAL:
            return ReferralConfig(message=str(d.get("message", "")))
        if action_type == ACTION_SWITCH_MODEL_HINT:
            return ModelHintConfig(model_id=str(d["modelId"]), message=str(d.get("message", "")))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Invalid config for {action_type}: {exc}") from exc
    return NoActionConfig()


def _package_to_dict(p: CustomPackage) -> Dict[str, Any]:
    return {"name": p.name, "price": p.price, "credits": p.credits}


def _bonus_to_dict(b: GrantBurnableBonusConfig) -> Dict[str, Any]:
    return {
        "amount": b.amount,
        "expiresInHours": b.expires_in_hours,
        "conditionGenerations": b.condition_generations,
        "conditionTopUpAmount": b.condition_top_up_amount,
    }


def action_config_to_dict(config: ActionConfig) -> Dict[str, Any]:
    if isinstance(config, SendMessageConfig):
        d: Dict[str, Any] = {"message": config.message}
        if config.package_id is not None or config.custom_package is not None:
            d["includeOffer"] = True
            d["packageId"] = config.package_id
            if config.custom_package is not None:
                d["customPackage"] = _package_to_dict(config.custom_package)
        if config.burnable_bonus is not None:
            d["includeBonus"] = True
            d["burnableBonus"] = _bonus_to_dict(config.burnable_bonus)
        return d
    if isinstance(config, GrantBurnableBonusConfig):
        return _bonus_to_dict(config)
    if isinstance(config, TagUserConfig):
        return {"tag": config.tag}
    if isinstance(config, SpecialOfferConfig):
        d = {"packageId": config.package_id, "message": config.message}
        if config.custom_package is not None:
            d["customPackage"] = _package_to_dict(config.custom_package)
        return d
    if isinstance(config, TripwireConfig):
        return {"overlayId": config.overlay_id}
    if isinstance(config, ReferralConfig):
        return {"message": config.message}
    if isinstance(config, ModelHintConfig):
        return {"modelId": config.model_id, "message": config.message}
    return {}


# ---------------------------------------------------------------------------
# Condition (persisted flat form)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Condition:
    """One flat condition; same group_id => AND, distinct group_id => OR."""

    field:    str
    operator: str
    value:    str
    group_id: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.group_id, int) or isinstance(self.group_id, bool):
            raise TypeError(
                f"group_id must be int, got {type(self.group_id).__name__}"
            )
        if self.group_id < 0:
            raise ValueError(f"group_id must be >= 0, got {self.group_id}")

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Condition":
        return Condition(
            field=d["field"],
            operator=d["operator"],
            value="" if d.get("value") is None else str(d["value"]),
            group_id=int(d.get("groupId", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "groupId": self.group_id,
        }


# ---------------------------------------------------------------------------
# FSM graph
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FSMVersion:
    id:        int
    name:      str = ""
    is_active: bool = False

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FSMVersion":
        return FSMVersion(
            id=int(d["id"]),
            name=d.get("name", ""),
            is_active=bool(d.get("isActive", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "isActive": self.is_active}


@dataclass(frozen=True, slots=True)
class FSMState:
    id:          str
    name:        str
    version_id:  int
    is_initial:  bool = False
    is_terminal: bool = False

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FSMState":
        return FSMState(
            id=str(d["id"]),
            name=d["name"],
            version_id=int(d["versionId"]),
            is_initial=bool(d.get("isInitial", False)),
            is_terminal=bool(d.get("isTerminal", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "versionId": self.version_id,
            "isInitial": self.is_initial,
            "isTerminal": self.is_terminal,
        }


@dataclass(frozen=True, slots=True)
class Action:
    """A transition action; config is one of the payload dataclasses above."""

    type:   str
    config: ActionConfig
    order:  int = 0

    def __post_init__(self) -> None:
        if self.type not in ACTION_TYPES:
            raise ValueError(f"Invalid action type: {self.type!r}")

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Action":
        action_type = d["type"]
        return Action(
            type=action_type,
            config=action_config_from_dict(action_type, d.get("config") or {}),
            order=int(d.get("order", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "config": action_config_to_dict(self.config),
            "order": self.order,
        }


@dataclass(frozen=True, slots=True)
class FSMTransition:
    id:              str
    from_state_id:   str
    to_state_id:     str
    version_id:      int
    trigger_type:    str = TRIGGER_EVENT          # EVENT | TIME
    trigger_event:   Optional[str] = None
    timeout_minutes: Optional[int] = None
    priority:        int = 0
    conditions:      Tuple[Condition, ...] = ()
    actions:         Tuple[Action, ...] = ()

    def __post_init__(self) -> None:
        if self.trigger_type not in (TRIGGER_EVENT, TRIGGER_TIME):
            raise ValueError(f"Invalid trigger type: {self.trigger_type!r}")
        if not isinstance(self.priority, int):
            raise TypeError(
                f"priority must be int, got {type(self.priority).__name__}"
            )

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FSMTransition":
        timeout = d.get("timeoutMinutes")
        return FSMTransition(
            id=str(d["id"]),
            from_state_id=str(d["fromStateId"]),
            to_state_id=str(d["toStateId"]),
            version_id=int(d["versionId"]),
            trigger_type=d.get("triggerType", TRIGGER_EVENT),
            trigger_event=d.get("triggerEvent") or None,
            timeout_minutes=int(timeout) if timeout is not None else None,
            priority=int(d.get("priority", 0)),
            conditions=tuple(Condition.from_dict(c) for c in d.get("conditions", [])),
            actions=tuple(Action.from_dict(a) for a in d.get("actions", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fromStateId": self.from_state_id,
            "toStateId": self.to_state_id,
            "versionId": self.version_id,
            "triggerType": self.trigger_type,
            "triggerEvent": self.trigger_event,
            "timeoutMinutes": self.timeout_minutes,
            "priority": self.priority,
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
        }


# ---------------------------------------------------------------------------
# UserFacts (raw aggregates from the data collaborator)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UserFacts:
    """Historical facts about one user, as returned by the data store."""

    user_id:                     str
    credits:                     int
    created_at:                  datetime
    total_generated:             int = 0
    tags:                        Tuple[str, ...] = ()
    last_active_at:              Optional[datetime] = None
    is_blocked:                  bool = False
    completed_purchase_count:    int = 0
    last_completed_purchase_at:  Optional[datetime] = None
    last_failed_purchase_at:     Optional[datetime] = None
    last_generation_at:          Optional[datetime] = None
    last_generation_model:       Optional[str] = None
    active_overlays:             Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.completed_purchase_count < 0:
            raise ValueError(
                f"Negative completed_purchase_count ({self.completed_purchase_count}) "
                f"for user {self.user_id!r}"
            )
        if self.total_generated < 0:
            raise ValueError(
                f"Negative total_generated ({self.total_generated}) "
                f"for user {self.user_id!r}"
            )

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "UserFacts":
        created_at = parse_ts(d["createdAt"])
        if created_at is None:
            raise ValueError(f"User {d.get('id')!r} has no createdAt")
        gen = d.get("lastGeneration") or {}
        return UserFacts(
            user_id=str(d["id"]),
            credits=int(d.get("credits", 0)),
            created_at=created_at,
            total_generated=int(d.get("totalGenerated", 0)),
            tags=tuple(d.get("tags", [])),
            last_active_at=parse_ts(d.get("lastActiveAt")),
            is_blocked=bool(d.get("isBlocked", False)),
            completed_purchase_count=int(d.get("completedPurchases", 0)),
            last_completed_purchase_at=parse_ts(d.get("lastCompletedPurchaseAt")),
            last_failed_purchase_at=parse_ts(d.get("lastFailedPurchaseAt")),
            last_generation_at=parse_ts(gen.get("createdAt")),
            last_generation_model=gen.get("modelId") or None,
            active_overlays=tuple(d.get("activeOverlays", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        last_gen = None
        if self.last_generation_at is not None:
            last_gen = {
                "createdAt": format_ts(self.last_generation_at),
                "modelId": self.last_generation_model,
            }
        return {
            "id": self.user_id,
            "credits": self.credits,
            "createdAt": format_ts(self.created_at),
            "totalGenerated": self.total_generated,
            "tags": list(self.tags),
            "lastActiveAt": format_ts(self.last_active_at),
            "isBlocked": self.is_blocked,
            "completedPurchases": self.completed_purchase_count,
            "lastCompletedPurchaseAt": format_ts(self.last_completed_purchase_at),
            "lastFailedPurchaseAt": format_ts(self.last_failed_purchase_at),
            "lastGeneration": last_gen,
            "activeOverlays": list(self.active_overlays),
        }


# ---------------------------------------------------------------------------
# Context (derived snapshot)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Context:
    """Fully derived fact snapshot; rebuilt per evaluation, never mutated."""

    user_id:                   str
    credits:                   int
    total_generations:         int
    total_payments:            int
    created_at:                datetime
    last_payment_failed:       bool
    is_paid_user:              bool
    is_low_balance:            bool
    days_since_created:        float
    tags:                      Tuple[str, ...] = ()
    last_generation_at:        Optional[datetime] = None
    last_payment_at:           Optional[datetime] = None
    preferred_model:           Optional[str] = None
    hours_since_last_pay:      Optional[float] = None
    hours_since_last_gen:      Optional[float] = None
    hours_since_last_activity: Optional[float] = None
    active_overlays:           Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userTags": list(self.tags),
            "credits": self.credits,
            "totalGenerations": self.total_generations,
            "totalPayments": self.total_payments,
            "lastGenerationAt": format_ts(self.last_generation_at),
            "lastPaymentAt": format_ts(self.last_payment_at),
            "lastPaymentFailed": self.last_payment_failed,
            "createdAt": format_ts(self.created_at),
            "preferredModel": self.preferred_model,
            "isPaidUser": self.is_paid_user,
            "isLowBalance": self.is_low_balance,
            "daysSinceCreated": self.days_since_created,
            "hoursSinceLastPay": self.hours_since_last_pay,
            "hoursSinceLastGen": self.hours_since_last_gen,
            "hoursSinceLastActivity": self.hours_since_last_activity,
            "activeOverlays": list(self.active_overlays),
        }


# ---------------------------------------------------------------------------
# UserFSMState (persisted immersion output)
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class UserFSMState:
    user_id:    str
    state_id:   str
    version_id: int
    entered_at: datetime

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "UserFSMState":
        entered_at = parse_ts(d["enteredAt"])
        if entered_at is None:
            raise ValueError(f"Assignment for {d.get('userId')!r} has no enteredAt")
        return UserFSMState(
            user_id=str(d["userId"]),
            state_id=str(d["stateId"]),
            version_id=int(d["versionId"]),
            entered_at=entered_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "stateId": self.state_id,
            "versionId": self.version_id,
            "enteredAt": format_ts(self.entered_at),
        }


# ---------------------------------------------------------------------------
# Rule (simulator input)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Rule:
    """A named trigger rule; only its conditions matter to the simulator."""

    id:         str
    name:       str = ""
    trigger:    Optional[str] = None
    conditions: Tuple[Condition, ...] = ()
    meta:       Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Rule":
        return Rule(
            id=str(d["id"]),
            name=d.get("name", ""),
            trigger=d.get("trigger"),
            conditions=tuple(Condition.from_dict(c) for c in d.get("conditions", [])),
            meta=d.get("meta", {}),
        )


def conditions_from_list(items: List[Dict[str, Any]]) -> List[Condition]:
    return [Condition.from_dict(c) for c in items]
