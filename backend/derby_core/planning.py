"""Lane demand for the round being planned.

Everything is rebuilt from the round's heat history on each call. Racers and
lanes get dense integer indices so the cost functions downstream work on plain
lists instead of id-keyed dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from .models import Heat, Racer

DEFAULT_ROUNDS = 1


@dataclass
class PlanningState:
    racers: List[Racer]
    lane_count: int
    rounds: int
    index_by_id: Dict[str, int] = field(default_factory=dict)
    lane_counts: List[List[int]] = field(default_factory=list)
    lane_needs: List[List[int]] = field(default_factory=list)
    total_assignments: List[int] = field(default_factory=list)
    total_needs: List[int] = field(default_factory=list)
    lane_usage: List[int] = field(default_factory=list)
    pair_counts: List[List[int]] = field(default_factory=list)

    def racer_id(self, index: int) -> str:
        return self.racers[index].id

    def need(self, index: int, lane_number: int) -> int:
        return self.lane_needs[index][lane_number - 1]

    def lane_count_for(self, index: int, lane_number: int) -> int:
        return self.lane_counts[index][lane_number - 1]

    def usage(self, lane_number: int) -> int:
        return self.lane_usage[lane_number - 1]

    def pair_count(self, first: int, second: int) -> int:
        return self.pair_counts[first][second]

    def needing_runs(self) -> List[int]:
        """Indices of racers with unmet lane demand, in roster order."""

        return [index for index, total in enumerate(self.total_needs) if total > 0]

    @property
    def coverage_complete(self) -> bool:
        return not any(self.total_needs)


def _unique_racers(racers: Iterable[Racer]) -> List[Racer]:
    unique: List[Racer] = []
    seen: set[str] = set()
    for racer in racers:
        if racer.id in seen:
            continue
        seen.add(racer.id)
        unique.append(racer)
    return unique


def build_planning_state(
    racers: Iterable[Racer],
    lane_count: int,
    rounds: int,
    existing_heats: Sequence[Heat],
) -> PlanningState:
    roster = _unique_racers(racers)
    size = len(roster)
    state = PlanningState(
        racers=roster,
        lane_count=lane_count,
        rounds=rounds,
        index_by_id={racer.id: index for index, racer in enumerate(roster)},
        lane_counts=[[0] * lane_count for _ in range(size)],
        total_assignments=[0] * size,
        lane_usage=[0] * lane_count,
        pair_counts=[[0] * size for _ in range(size)],
    )

    for heat in existing_heats:
        heat_members: List[int] = []
        for lane in heat.lanes:
            lane_idx = lane.lane_number - 1
            if lane_idx < 0 or lane_idx >= lane_count:
                continue
            index = state.index_by_id.get(lane.racer_id)
            if index is None:
                continue

            state.lane_counts[index][lane_idx] += 1
            state.total_assignments[index] += 1
            state.lane_usage[lane_idx] += 1
            if index not in heat_members:
                heat_members.append(index)

        for pos, first in enumerate(heat_members):
            for second in heat_members[pos + 1:]:
                state.pair_counts[first][second] += 1
                state.pair_counts[second][first] += 1

    for counts in state.lane_counts:
        needs = [max(0, rounds - count) for count in counts]
        state.lane_needs.append(needs)
        state.total_needs.append(sum(needs))

    return state
