from __future__ import annotations

import math
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence

from .models import Standing, compare_car_numbers
from .planning import PlanningState

LANE_COVERAGE_PENALTY = 200
PERFORMANCE_WEIGHT = 4
REMATCH_WEIGHT = 12
ASSIGNMENT_WEIGHT = 2
NEED_WEIGHT = 6


def performance_score(standing: Optional[Standing]) -> float:
    if standing is None:
        return 0
    heats_run = max(standing.heats_run, 1)
    win_rate = standing.wins / heats_run
    return standing.wins * 100 + win_rate * 10 - standing.losses * 2


def _seed_order(state: PlanningState, performance: List[float]):
    def compare(a: int, b: int) -> int:
        if state.total_needs[a] != state.total_needs[b]:
            return state.total_needs[b] - state.total_needs[a]
        if state.total_assignments[a] != state.total_assignments[b]:
            return state.total_assignments[a] - state.total_assignments[b]
        if performance[a] != performance[b]:
            return -1 if performance[a] > performance[b] else 1
        return compare_car_numbers(state.racers[a].car_number, state.racers[b].car_number)

    return cmp_to_key(compare)


def candidate_cost(
    state: PlanningState,
    candidate: int,
    chosen: Sequence[int],
    lanes: Sequence[int],
    performance: List[float],
    seed_performance: float,
) -> float:
    open_needed = sum(1 for lane_number in lanes if state.need(candidate, lane_number) > 0)
    coverage_penalty = LANE_COVERAGE_PENALTY if open_needed == 0 else 0
    rematches = sum(state.pair_count(candidate, other) for other in chosen)

    return (
        coverage_penalty
        + PERFORMANCE_WEIGHT * abs(performance[candidate] - seed_performance)
        + REMATCH_WEIGHT * rematches
        + ASSIGNMENT_WEIGHT * state.total_assignments[candidate]
        - NEED_WEIGHT * state.total_needs[candidate]
    )


def choose_participants(
    state: PlanningState,
    needing: Sequence[int],
    heat_size: int,
    lanes: Sequence[int],
    standings: Dict[str, Standing],
) -> List[int]:
    """Seed with the most urgent racer, then greedily add the cheapest fits.

    May return fewer than ``heat_size`` racers; the caller drops the heat.
    """

    if not needing or heat_size <= 0:
        return []

    performance = [performance_score(standings.get(racer.id)) for racer in state.racers]
    seed = sorted(needing, key=_seed_order(state, performance))[0]
    seed_performance = performance[seed]

    chosen = [seed]
    used = {seed}
    while len(chosen) < heat_size:
        best: Optional[int] = None
        best_cost = math.inf
        for candidate in needing:
            if candidate in used:
                continue
            cost = candidate_cost(state, candidate, chosen, lanes, performance, seed_performance)
            if cost < best_cost:
                best_cost = cost
                best = candidate

        if best is None:
            break
        chosen.append(best)
        used.add(best)

    return chosen
