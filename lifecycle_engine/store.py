"""
Data-access collaborator for the Lifecycle Engine.

``FactsStore`` is the contract the Context Builder and Immersion Engine read
through.  ``JsonDatasetStore`` implements it over a single JSON dataset file::

    {"versions": [...], "states": [...], "transitions": [...],
     "users": [...], "assignments": [...]}

Every call made through ``call_with_timeout`` is bounded in wall-clock time.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from lifecycle_engine.models import (
    FSMState,
    FSMTransition,
    FSMVersion,
    UserFacts,
    UserFSMState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreTimeoutError(TimeoutError):
    """A data store call exceeded the configured I/O timeout."""


def call_with_timeout(fn: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run ``fn(*args)`` on a worker thread and wait at most ``timeout`` seconds."""
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            name = getattr(fn, "__name__", repr(fn))
            logger.warning("Store call %s timed out after %.2fs", name, timeout)
            raise StoreTimeoutError(f"{name} exceeded {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)


class FactsStore(Protocol):
    def get_user_facts(self, user_id: str) -> Optional[UserFacts]: ...
    def list_user_ids(self, limit: Optional[int] = None) -> List[str]: ...
    def get_version(self, version_id: int) -> Optional[FSMVersion]: ...
    def get_active_version(self) -> Optional[FSMVersion]: ...
    def get_state(self, state_id: str) -> Optional[FSMState]: ...
    def get_initial_state(self, version_id: int) -> Optional[FSMState]: ...
    def list_states(self, version_id: int) -> List[FSMState]: ...
    def get_transitions(self, from_state_id: str, version_id: int) -> List[FSMTransition]: ...
    def upsert_user_state(self, record: UserFSMState) -> None: ...
    def list_user_states(self, version_id: Optional[int] = None) -> List[UserFSMState]: ...


class JsonDatasetStore:
    """In-memory store backed by a JSON dataset file."""

    def __init__(
        self,
        versions: Iterable[FSMVersion] = (),
        states: Iterable[FSMState] = (),
        transitions: Iterable[FSMTransition] = (),
        users: Iterable[UserFacts] = (),
        assignments: Iterable[UserFSMState] = (),
    ) -> None:
        self.versions: Dict[int, FSMVersion] = {v.id: v for v in versions}
        self.states: Dict[str, FSMState] = {s.id: s for s in states}
        self.transitions: List[FSMTransition] = list(transitions)
        self.users: Dict[str, UserFacts] = {u.user_id: u for u in users}
        self.assignments: Dict[str, UserFSMState] = {a.user_id: a for a in assignments}

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "JsonDatasetStore":
        return JsonDatasetStore(
            versions=[FSMVersion.from_dict(v) for v in d.get("versions", [])],
            states=[FSMState.from_dict(s) for s in d.get("states", [])],
            transitions=[FSMTransition.from_dict(t) for t in d.get("transitions", [])],
            users=[UserFacts.from_dict(u) for u in d.get("users", [])],
            assignments=[UserFSMState.from_dict(a) for a in d.get("assignments", [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versions": [v.to_dict() for v in self.versions.values()],
            "states": [s.to_dict() for s in self.states.values()],
            "transitions": [t.to_dict() for t in self.transitions],
            "users": [u.to_dict() for u in self.users.values()],
            "assignments": [
                a.to_dict() for _, a in sorted(self.assignments.items())
            ],
        }

    @classmethod
    def load(cls, path: str) -> "JsonDatasetStore":
        p = Path(path)
        with open(p, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = json.load(f)
        store = cls.from_dict(data)
        logger.info(
            "Loaded dataset %s: %d users, %d states, %d transitions",
            path, len(store.users), len(store.states), len(store.transitions),
        )
        return store

    def save(self, path: str) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    # ------------------------------------------------------------------
    # FactsStore
    # ------------------------------------------------------------------
    def get_user_facts(self, user_id: str) -> Optional[UserFacts]:
        return self.users.get(user_id)

    def list_user_ids(self, limit: Optional[int] = None) -> List[str]:
        """User ids, newest account first."""
        ordered = sorted(
            self.users.values(),
            key=lambda u: (u.created_at, u.user_id),
            reverse=True,
        )
        ids = [u.user_id for u in ordered]
        return ids if limit is None else ids[:limit]

    def get_version(self, version_id: int) -> Optional[FSMVersion]:
        return self.versions.get(version_id)

    def get_active_version(self) -> Optional[FSMVersion]:
        return next((v for v in self.versions.values() if v.is_active), None)

    def get_state(self, state_id: str) -> Optional[FSMState]:
        return self.states.get(state_id)

    def get_initial_state(self, version_id: int) -> Optional[FSMState]:
        return next(
            (s for s in self.states.values() if s.version_id == version_id and s.is_initial),
            None,
        )

    def list_states(self, version_id: int) -> List[FSMState]:
        return [s for s in self.states.values() if s.version_id == version_id]

    def get_transitions(self, from_state_id: str, version_id: int) -> List[FSMTransition]:
        """Outgoing transitions, highest priority first (stable on ties)."""
        candidates = [
            t for t in self.transitions
            if t.from_state_id == from_state_id and t.version_id == version_id
        ]
        return sorted(candidates, key=lambda t: t.priority, reverse=True)

    def upsert_user_state(self, record: UserFSMState) -> None:
        self.assignments[record.user_id] = record

    def get_user_state(self, user_id: str) -> Optional[UserFSMState]:
        return self.assignments.get(user_id)

    def list_user_states(self, version_id: Optional[int] = None) -> List[UserFSMState]:
        return [
            a for _, a in sorted(self.assignments.items())
            if version_id is None or a.version_id == version_id
        ]
