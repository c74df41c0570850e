from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Dict, Iterable, List, Optional

PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"

HEAT_STATUSES = (PENDING, RUNNING, COMPLETE)


@dataclass(frozen=True)
class Racer:
    """A car entered in the event.

    Identity is ``id``. ``car_number`` is what gets painted on the car and is
    only used for display and as the last tie-break when ranking.
    """

    id: str
    car_number: str = ""


@dataclass
class Standing:
    """Win/loss record for a racer, derived from recorded results."""

    racer_id: str
    wins: int = 0
    losses: int = 0
    heats_run: int = 0
    avg_time_ms: Optional[float] = None


@dataclass(frozen=True)
class HeatLane:
    lane_number: int
    racer_id: str


@dataclass
class Heat:
    """One race among racers occupying distinct lanes.

    ``round_number``, ``heat_number`` and ``heat_id`` belong to whoever stores
    the heat; the planner only looks at ``status`` and ``lanes``.
    """

    lanes: List[HeatLane] = field(default_factory=list)
    status: str = PENDING
    round_number: int = 1
    heat_number: int = 0
    heat_id: Optional[str] = None

    @property
    def racer_ids(self) -> List[str]:
        return [lane.racer_id for lane in self.lanes]

    @property
    def in_flight(self) -> bool:
        return self.status != COMPLETE


@dataclass
class RoundRoster:
    """The racers pinned to a round when it was opened."""

    round_number: int
    racer_ids: List[str] = field(default_factory=list)

    def resolve(self, racers: Iterable[Racer]) -> List[Racer]:
        by_id: Dict[str, Racer] = {racer.id: racer for racer in racers}
        resolved: List[Racer] = []
        seen: set[str] = set()
        for racer_id in self.racer_ids:
            if racer_id in seen or racer_id not in by_id:
                continue
            seen.add(racer_id)
            resolved.append(by_id[racer_id])
        return resolved


_DECIMAL = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _as_number(value: str) -> Optional[float]:
    # Plain decimal literals only; blank counts as 0.
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return 0.0
    if not _DECIMAL.fullmatch(text):
        return None
    return float(text)


def compare_car_numbers(a: str, b: str) -> int:
    """Numeric comparison when both car numbers are numbers, else lexicographic."""

    a_num = _as_number(a)
    b_num = _as_number(b)
    if a_num is not None and b_num is not None:
        return (a_num > b_num) - (a_num < b_num)
    return (a > b) - (a < b)


car_number_key = cmp_to_key(compare_car_numbers)
