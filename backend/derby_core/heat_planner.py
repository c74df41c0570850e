"""Rolling heat planner.

``plan_next_heat`` decides the single next heat for a round from what has
already been scheduled; ``plan_heat_queue`` keeps a short window of pending
heats filled so late results can still shape upcoming matchups.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from .lanes import assign_lanes, pick_lanes
from .matchmaking import choose_participants
from .models import PENDING, Heat, Racer, Standing
from .planning import DEFAULT_ROUNDS, build_planning_state

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = 3


def clamp_lookahead(lookahead: Optional[int] = None) -> int:
    return 2 if lookahead == 2 else 3


def _standings_by_racer(standings: Optional[Iterable[Standing]]) -> Dict[str, Standing]:
    return {standing.racer_id: standing for standing in standings or []}


def plan_next_heat(
    racers: Sequence[Racer],
    lane_count: int,
    rounds: Optional[int] = None,
    standings: Optional[Iterable[Standing]] = None,
    existing_heats: Sequence[Heat] = (),
) -> Optional[Heat]:
    """Plan at most one heat for the round described by ``existing_heats``.

    Returns ``None`` when there is nothing useful left to run, which includes
    a zero lane count or an empty roster.
    """

    lane_count = max(0, lane_count)
    rounds = max(DEFAULT_ROUNDS, rounds if rounds is not None else DEFAULT_ROUNDS)
    if lane_count == 0 or not racers:
        return None

    state = build_planning_state(racers, lane_count, rounds, existing_heats)
    needing = state.needing_runs()
    if not needing:
        return None

    heat_size = min(lane_count, len(needing))
    lanes = pick_lanes(state, heat_size, needing)
    participants = choose_participants(state, needing, heat_size, lanes, _standings_by_racer(standings))
    if len(participants) < heat_size:
        logger.debug("Only found %s of %s racers for next heat", len(participants), heat_size)
        return None

    assignment = assign_lanes(state, participants, lanes)
    if assignment is None:
        return None

    return Heat(lanes=assignment, status=PENDING)


def plan_heat_queue(
    racers: Sequence[Racer],
    lane_count: int,
    rounds: Optional[int] = None,
    standings: Optional[Iterable[Standing]] = None,
    existing_heats: Sequence[Heat] = (),
    lookahead: int = DEFAULT_LOOKAHEAD,
) -> List[Heat]:
    lookahead = max(1, lookahead)
    in_flight = sum(1 for heat in existing_heats if heat.in_flight)
    if in_flight >= lookahead:
        return []

    standings = list(standings or [])
    working = list(existing_heats)
    planned: List[Heat] = []

    for _ in range(in_flight, lookahead):
        heat = plan_next_heat(racers, lane_count, rounds, standings, working)
        if heat is None:
            break
        planned.append(heat)
        working.append(Heat(lanes=list(heat.lanes), status=PENDING))

    return planned
