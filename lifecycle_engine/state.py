"""
Canonical hashing of persisted FSM assignments.

The hash covers ``(userId, stateId, versionId)`` only; ``enteredAt`` is the
wall-clock time of the run and is excluded so that repeated replays over the
same facts produce the same hash.  The JSON is canonical (sorted keys, no
whitespace, records ordered by user id).
"""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Iterable, List

from lifecycle_engine.models import UserFSMState


def compute_assignments_hash(assignments: Iterable[UserFSMState]) -> str:
    """SHA-256 of the canonical assignment list."""
    records: List[dict] = [
        {"userId": a.user_id, "stateId": a.state_id, "versionId": a.version_id}
        for a in sorted(assignments, key=lambda a: a.user_id)
    ]
    canonical = json.dumps(records, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def save_hash(value: str, path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        f.write(value + "\n")


def load_hash(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()
