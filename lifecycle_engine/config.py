"""
Runtime configuration for the Lifecycle Engine.

Defaults come from the constants in ``lifecycle_engine.models``; every value
can be overridden through a ``LIFECYCLE_*`` environment variable.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional

from lifecycle_engine.models import (
    ACTION_BATCH_LIMIT,
    BLOCKED_STATE_NAME,
    IMMERSION_BATCH_LIMIT,
    IO_TIMEOUT_SECONDS,
    LOW_BALANCE_THRESHOLD,
    MAX_DEPTH,
)

ENV_PREFIX = "LIFECYCLE_"


@dataclass(frozen=True, slots=True)
class EngineConfig:
    low_balance_threshold: int = LOW_BALANCE_THRESHOLD
    max_depth:             int = MAX_DEPTH
    blocked_state_name:    str = BLOCKED_STATE_NAME
    io_timeout_seconds:    float = IO_TIMEOUT_SECONDS
    immersion_batch_limit: int = IMMERSION_BATCH_LIMIT
    action_batch_limit:    int = ACTION_BATCH_LIMIT

    def __post_init__(self) -> None:
        if self.max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {self.max_depth}")
        if self.io_timeout_seconds <= 0:
            raise ValueError(
                f"io_timeout_seconds must be > 0, got {self.io_timeout_seconds}"
            )
        if self.immersion_batch_limit < 1 or self.action_batch_limit < 1:
            raise ValueError("batch limits must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from ``LIFECYCLE_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name, key, cast in _ENV_FIELDS:
            raw = env.get(ENV_PREFIX + key)
            if raw is None or raw.strip() == "":
                continue
            try:
                overrides[name] = cast(raw.strip())
            except ValueError as exc:
                raise ValueError(
                    f"Invalid value for {ENV_PREFIX + key}: {raw!r}"
                ) from exc
        return cls(**overrides)

    def with_overrides(self, **kwargs: Any) -> "EngineConfig":
        """Return a copy with the non-None keyword arguments applied."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


_ENV_FIELDS: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("low_balance_threshold", "LOW_BALANCE_THRESHOLD", int),
    ("max_depth", "MAX_DEPTH", int),
    ("blocked_state_name", "BLOCKED_STATE", str),
    ("io_timeout_seconds", "IO_TIMEOUT", float),
    ("immersion_batch_limit", "IMMERSION_BATCH_LIMIT", int),
    ("action_batch_limit", "ACTION_BATCH_LIMIT", int),
)
