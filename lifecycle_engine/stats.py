"""Per-state user distribution for a version."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from lifecycle_engine.models import FSMState, UserFSMState


@dataclass(frozen=True, slots=True)
class StateStat:
    state_id:    str
    name:        str
    is_terminal: bool
    is_initial:  bool
    count:       int


@dataclass(slots=True)
class DistributionReport:
    version_id:         int
    total_active_users: int = 0
    states:             List[StateStat] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versionId": self.version_id,
            "totalActiveUsers": self.total_active_users,
            "stateDistribution": [
                {
                    "stateId": s.state_id,
                    "name": s.name,
                    "isTerminal": s.is_terminal,
                    "isInitial": s.is_initial,
                    "count": s.count,
                }
                for s in self.states
            ],
        }


def state_distribution(
    version_id: int,
    states: Iterable[FSMState],
    assignments: Iterable[UserFSMState],
) -> DistributionReport:
    """Count assigned users per state; states with no users report 0."""
    counts = Counter(a.state_id for a in assignments if a.version_id == version_id)
    report = DistributionReport(version_id=version_id)
    for s in states:
        if s.version_id != version_id:
            continue
        report.states.append(
            StateStat(s.id, s.name, s.is_terminal, s.is_initial, counts.get(s.id, 0))
        )
    report.total_active_users = sum(s.count for s in report.states)
    return report
