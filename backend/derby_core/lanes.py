from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

from .models import HeatLane
from .planning import PlanningState

logger = logging.getLogger(__name__)

SATISFIED_LANE_PENALTY = 80
LANE_REPEAT_WEIGHT = 8


class PlanningInvariantError(RuntimeError):
    """Raised when the planner produces something that can only be a bug."""


def pick_lanes(state: PlanningState, heat_size: int, needing: Sequence[int]) -> List[int]:
    """Choose the lanes to field, most-demanded first.

    Ties go to the less used lane, then the lower lane number.
    """

    candidates = []
    for lane_idx in range(state.lane_count):
        demand = sum(state.lane_needs[index][lane_idx] for index in needing)
        candidates.append((-demand, state.lane_usage[lane_idx], lane_idx + 1))

    candidates.sort()
    return [lane_number for _, _, lane_number in candidates[:heat_size]]


def lane_cost(state: PlanningState, index: int, lane_number: int) -> int:
    need_penalty = 0 if state.need(index, lane_number) > 0 else SATISFIED_LANE_PENALTY
    repeat_penalty = state.lane_count_for(index, lane_number) * LANE_REPEAT_WEIGHT
    return need_penalty + repeat_penalty + state.usage(lane_number)


def _search(costs: List[List[int]]) -> Optional[List[int]]:
    # Depth-first branch-and-bound. slots[d] is the lane position held by
    # participant d; lanes are tried in order so the first cheapest wins.
    size = len(costs)
    best_cost = math.inf
    best: Optional[List[int]] = None

    used = [False] * size
    slots = [-1] * size
    cursor = [0] * size
    partial = [0] * (size + 1)
    depth = 0

    while depth >= 0:
        if depth == size:
            if partial[size] < best_cost:
                best_cost = partial[size]
                best = list(slots)
            depth -= 1
            used[slots[depth]] = False
            continue

        pos = cursor[depth]
        while pos < size and used[pos]:
            pos += 1
        if pos >= size:
            cursor[depth] = 0
            depth -= 1
            if depth >= 0:
                used[slots[depth]] = False
            continue

        cursor[depth] = pos + 1
        slots[depth] = pos
        used[pos] = True
        partial[depth + 1] = partial[depth] + costs[depth][pos]
        depth += 1

        if depth < size:
            cursor[depth] = 0
            if partial[depth] >= best_cost:
                depth -= 1
                used[slots[depth]] = False

    return best


def assign_lanes(
    state: PlanningState,
    participants: Sequence[int],
    lanes: Sequence[int],
) -> Optional[List[HeatLane]]:
    """Find the cheapest racer-to-lane bijection.

    Returns ``None`` when the cheapest assignment puts nobody in a lane they
    still need, since running it would not move the round forward.
    """

    if not participants or len(participants) != len(lanes):
        return None

    costs = [[lane_cost(state, index, lane_number) for lane_number in lanes] for index in participants]
    slots = _search(costs)

    if slots is None or len(slots) != len(participants) or len(set(slots)) != len(slots):
        raise PlanningInvariantError(f"lane search returned an incomplete assignment: {slots!r}")

    assignment = [
        HeatLane(lane_number=lanes[slot], racer_id=state.racer_id(index))
        for index, slot in zip(participants, slots)
    ]

    progress = sum(
        1 for index, slot in zip(participants, slots) if state.need(index, lanes[slot]) > 0
    )
    if progress == 0:
        logger.debug("Discarding heat %s: no racer gains a needed lane", assignment)
        return None

    return sorted(assignment, key=lambda lane: lane.lane_number)
