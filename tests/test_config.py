"""
Tests for EngineConfig defaults and environment overrides.
"""
import pytest

from lifecycle_engine.config import EngineConfig
from lifecycle_engine.models import LOW_BALANCE_THRESHOLD, MAX_DEPTH


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.low_balance_threshold == LOW_BALANCE_THRESHOLD == 20
        assert config.max_depth == MAX_DEPTH == 50
        assert config.blocked_state_name == "BLOCKED"
        assert config.io_timeout_seconds == 5.0
        assert config.immersion_batch_limit == 1000
        assert config.action_batch_limit == 100

    def test_from_empty_env(self):
        assert EngineConfig.from_env({}) == EngineConfig()

    def test_from_env(self):
        config = EngineConfig.from_env({
            "LIFECYCLE_LOW_BALANCE_THRESHOLD": "50",
            "LIFECYCLE_MAX_DEPTH": " 10 ",
            "LIFECYCLE_BLOCKED_STATE": "BANNED",
            "LIFECYCLE_IO_TIMEOUT": "0.5",
            "LIFECYCLE_ACTION_BATCH_LIMIT": "",
        })
        assert config.low_balance_threshold == 50
        assert config.max_depth == 10
        assert config.blocked_state_name == "BANNED"
        assert config.io_timeout_seconds == 0.5
        assert config.action_batch_limit == 100

    def test_invalid_env_value(self):
        with pytest.raises(ValueError, match="LIFECYCLE_MAX_DEPTH"):
            EngineConfig.from_env({"LIFECYCLE_MAX_DEPTH": "deep"})

    def test_validation(self):
        with pytest.raises(ValueError):
            EngineConfig(max_depth=0)
        with pytest.raises(ValueError):
            EngineConfig(io_timeout_seconds=0)
        with pytest.raises(ValueError):
            EngineConfig(action_batch_limit=0)

    def test_with_overrides_ignores_none(self):
        config = EngineConfig().with_overrides(max_depth=None, low_balance_threshold=5)
        assert config.max_depth == 50
        assert config.low_balance_threshold == 5

    def test_frozen(self):
        with pytest.raises(AttributeError):
            EngineConfig().max_depth = 3
