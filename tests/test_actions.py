"""
Tests for typed action payloads and the dispatch boundary.
"""
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine.actions import (
    ActionResult,
    dispatch_bulk,
    dispatch_manual_action,
    dispatch_transition_actions,
    ordered_actions,
)
from lifecycle_engine.config import EngineConfig
from lifecycle_engine.context import ContextBuilder
from lifecycle_engine.models import (
    Action,
    Condition,
    CustomPackage,
    FSMTransition,
    GrantBurnableBonusConfig,
    ModelHintConfig,
    NoActionConfig,
    SendMessageConfig,
    SpecialOfferConfig,
    TagUserConfig,
    UserFacts,
    action_config_from_dict,
    action_config_to_dict,
)
from lifecycle_engine.store import JsonDatasetStore

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------
class RecordingDispatcher:
    """Collects dispatched actions; fails for user ids listed in ``failing``."""

    def __init__(self, failing=(), raising=()):
        self.calls = []
        self.failing = set(failing)
        self.raising = set(raising)

    def __call__(self, user_id, action_type, config):
        if user_id in self.raising:
            raise RuntimeError("gateway down")
        self.calls.append((user_id, action_type, config))
        if user_id in self.failing:
            return ActionResult(success=False, error="delivery failed")
        return ActionResult(success=True)


def _builder(*users, **config):
    if not users:
        users = (
            UserFacts("u-rich", 500, NOW - timedelta(days=3)),
            UserFacts("u-poor", 5, NOW - timedelta(days=3), total_generated=4),
        )
    return ContextBuilder(JsonDatasetStore(users=users), EngineConfig(**config))


# -----------------------------------------------------------------------
# Test: Payload adapter
# -----------------------------------------------------------------------
class TestActionConfig:
    def test_send_message_with_offer_and_bonus(self):
        config = action_config_from_dict("SEND_MESSAGE", {
            "message": "Hi",
            "includeOffer": True,
            "customPackage": {"name": "Starter", "price": 4.99, "credits": 100},
            "includeBonus": True,
            "burnableBonus": {"amount": 30, "expiresInHours": 12},
        })
        assert config == SendMessageConfig(
            message="Hi",
            custom_package=CustomPackage("Starter", 4.99, 100),
            burnable_bonus=GrantBurnableBonusConfig(amount=30, expires_in_hours=12),
        )

    def test_send_message_flags_off(self):
        config = action_config_from_dict("SEND_MESSAGE", {
            "message": "Hi",
            "includeOffer": False,
            "packageId": "pkg-1",
            "includeBonus": False,
            "burnableBonus": {"amount": 30},
        })
        assert config == SendMessageConfig(message="Hi")

    def test_bonus_defaults(self):
        config = action_config_from_dict("GRANT_BURNABLE_BONUS", {"amount": "25"})
        assert config == GrantBurnableBonusConfig(amount=25, expires_in_hours=24)

    def test_bonus_must_be_positive(self):
        with pytest.raises(ValueError):
            action_config_from_dict("GRANT_BURNABLE_BONUS", {"amount": 0})

    def test_special_offer_needs_package(self):
        with pytest.raises(ValueError):
            action_config_from_dict("SEND_SPECIAL_OFFER", {"message": "Deal"})
        config = action_config_from_dict("SEND_SPECIAL_OFFER", {"packageId": "pkg-9"})
        assert config == SpecialOfferConfig(package_id="pkg-9")

    def test_tag_required(self):
        with pytest.raises(ValueError):
            action_config_from_dict("TAG_USER", {})
        with pytest.raises(ValueError):
            action_config_from_dict("TAG_USER", {"tag": "  "})

    def test_model_hint(self):
        config = action_config_from_dict("SWITCH_MODEL_HINT", {"modelId": "sdxl"})
        assert config == ModelHintConfig(model_id="sdxl")

    def test_no_action(self):
        assert action_config_from_dict("NO_ACTION", {}) == NoActionConfig()

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Invalid action type"):
            action_config_from_dict("LAUNCH_ROCKET", {})

    def test_to_dict_reparses(self):
        configs = {
            "SEND_MESSAGE": SendMessageConfig(
                "Hi", package_id="pkg-1",
                burnable_bonus=GrantBurnableBonusConfig(10, 6, condition_generations=3),
            ),
            "TAG_USER": TagUserConfig("vip"),
            "SEND_SPECIAL_OFFER": SpecialOfferConfig(
                custom_package=CustomPackage("Pro", 9.99, 300), message="Deal",
            ),
        }
        for action_type, config in configs.items():
            assert action_config_from_dict(action_type, action_config_to_dict(config)) == config

    def test_action_model_round_trip(self):
        action = Action("TAG_USER", TagUserConfig("payer"), order=2)
        assert Action.from_dict(action.to_dict()) == action

    def test_transition_record_yields_typed_payloads(self):
        t = FSMTransition.from_dict({
            "id": "t1", "fromStateId": "a", "toStateId": "b", "versionId": 1,
            "actions": [
                {"type": "TAG_USER", "config": {"tag": "vip"}, "order": 1},
                {"type": "SWITCH_MODEL_HINT", "config": {"modelId": "sdxl"}},
            ],
        })
        assert t.actions[0].config == TagUserConfig("vip")
        assert t.actions[1].config == ModelHintConfig("sdxl")
        assert t.to_dict()["actions"][0]["config"] == {"tag": "vip"}

    def test_action_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            Action("LAUNCH_ROCKET", NoActionConfig())


# -----------------------------------------------------------------------
# Test: Transition actions
# -----------------------------------------------------------------------
class TestTransitionActions:
    def _transition(self):
        return FSMTransition(
            id="t", from_state_id="a", to_state_id="b", version_id=1,
            actions=(
                Action("TAG_USER", TagUserConfig("second"), order=2),
                Action("NO_ACTION", NoActionConfig(), order=1),
                Action("TAG_USER", TagUserConfig("first"), order=0),
            ),
        )

    def test_ordered(self):
        assert [a.order for a in ordered_actions(self._transition())] == [0, 1, 2]

    def test_dispatch_in_order_skipping_no_action(self):
        dispatcher = RecordingDispatcher()
        results = dispatch_transition_actions(dispatcher, "u-1", self._transition())
        assert [c[2].tag for c in dispatcher.calls] == ["first", "second"]
        assert [r.skipped for r in results] == [False, True, False]
        assert all(r.success for r in results)

    def test_dispatcher_exception_becomes_failure(self):
        dispatcher = RecordingDispatcher(raising={"u-1"})
        results = dispatch_transition_actions(dispatcher, "u-1", self._transition())
        assert [r.success for r in results] == [False, True, False]
        assert results[0].error == "gateway down"


# -----------------------------------------------------------------------
# Test: Manual and bulk dispatch
# -----------------------------------------------------------------------
class TestManualDispatch:
    def test_success(self):
        dispatcher = RecordingDispatcher()
        result = dispatch_manual_action(
            _builder(), dispatcher, "u-rich", "TAG_USER", {"tag": "vip"},
        )
        assert result.success
        assert dispatcher.calls == [("u-rich", "TAG_USER", TagUserConfig("vip"))]

    def test_invalid_type(self):
        result = dispatch_manual_action(_builder(), RecordingDispatcher(), "u-rich", "NOPE", {})
        assert not result.success
        assert "Invalid action type" in result.error

    def test_invalid_config(self):
        result = dispatch_manual_action(_builder(), RecordingDispatcher(), "u-rich", "TAG_USER", {})
        assert not result.success
        assert not result.skipped

    def test_user_not_found(self):
        result = dispatch_manual_action(
            _builder(), RecordingDispatcher(), "ghost", "TAG_USER", {"tag": "x"},
        )
        assert result == ActionResult(success=False, error="User not found")

    def test_conditions_not_met_skips(self):
        dispatcher = RecordingDispatcher()
        result = dispatch_manual_action(
            _builder(), dispatcher, "u-rich", "TAG_USER", {"tag": "x"},
            conditions=[Condition("is_low_balance", "EQUALS", "true")],
        )
        assert result.skipped
        assert result.error == "Conditions not met"
        assert dispatcher.calls == []


class TestBulkDispatch:
    def test_counts(self):
        dispatcher = RecordingDispatcher(failing={"u-poor"})
        summary = dispatch_bulk(
            _builder(), dispatcher, ["u-rich", "u-poor", "ghost"], "TAG_USER", {"tag": "x"},
        )
        assert summary.processed == 3
        assert summary.success_count == 1
        assert summary.fail_count == 2
        assert summary.skipped_count == 0
        assert not summary.limit_reached

    def test_conditions_skip(self):
        summary = dispatch_bulk(
            _builder(), RecordingDispatcher(), ["u-rich", "u-poor"], "TAG_USER", {"tag": "x"},
            conditions=[Condition("is_freeloader", "EQUALS", "true")],
        )
        assert summary.success_count == 1
        assert summary.skipped_count == 1
        assert summary.results["u-rich"].skipped

    def test_batch_limit(self):
        dispatcher = RecordingDispatcher()
        summary = dispatch_bulk(
            _builder(action_batch_limit=1), dispatcher, ["u-rich", "u-poor"],
            "TAG_USER", {"tag": "x"},
        )
        assert summary.processed == 1
        assert summary.limit_reached
        assert len(dispatcher.calls) == 1

    def test_zero_batch_limit(self):
        dispatcher = RecordingDispatcher()
        summary = dispatch_bulk(
            _builder(), dispatcher, ["u-rich"], "TAG_USER", {"tag": "x"}, batch_limit=0,
        )
        assert summary.processed == 0
        assert summary.limit_reached
        assert dispatcher.calls == []

    def test_empty_user_list(self):
        with pytest.raises(ValueError, match="No users provided"):
            dispatch_bulk(_builder(), RecordingDispatcher(), [], "TAG_USER", {"tag": "x"})
