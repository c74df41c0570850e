"""Round progression for a whole event.

Works on a snapshot of an event (racers, every heat with its round and number,
standings, pinned round rosters) and says what should happen next: which new
heats to queue, whether a new round opens, and whether the event is done.
Nothing here stores anything; the caller persists the returned values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .elimination import select_survivors_for_next_round
from .heat_planner import DEFAULT_LOOKAHEAD, plan_heat_queue, plan_next_heat
from .models import PENDING, Heat, Racer, RoundRoster, Standing

logger = logging.getLogger(__name__)

VALID_LOOKAHEADS = (2, 3)


@dataclass
class PlanningSettings:
    lane_count: int
    rounds: int = 1
    lookahead: int = DEFAULT_LOOKAHEAD

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlanningSettings":
        try:
            lane_count = int(payload.get("laneCount", payload.get("lane_count")))
        except (TypeError, ValueError) as exc:
            raise ValueError("lane count must be a whole number") from exc
        if lane_count < 1:
            raise ValueError("lane count must be at least 1")

        rounds_raw = payload.get("rounds")
        lookahead_raw = payload.get("lookahead")
        try:
            rounds = 1 if rounds_raw is None else int(rounds_raw)
            lookahead = DEFAULT_LOOKAHEAD if lookahead_raw is None else int(lookahead_raw)
        except (TypeError, ValueError) as exc:
            raise ValueError("rounds and lookahead must be whole numbers") from exc
        if rounds < 1:
            raise ValueError("rounds must be at least 1")
        if lookahead not in VALID_LOOKAHEADS:
            raise ValueError("lookahead must be 2 or 3")

        return cls(lane_count=lane_count, rounds=rounds, lookahead=lookahead)

    def to_payload(self) -> Dict[str, int]:
        return {"laneCount": self.lane_count, "rounds": self.rounds, "lookahead": self.lookahead}


@dataclass
class QueueUpdate:
    round_number: int
    heats: List[Heat] = field(default_factory=list)
    opened_roster: Optional[RoundRoster] = None

    @property
    def planned(self) -> int:
        return len(self.heats)


def current_round(heats: Sequence[Heat]) -> int:
    return max((heat.round_number for heat in heats), default=1)


def next_heat_number(heats: Sequence[Heat]) -> int:
    return max((heat.heat_number for heat in heats), default=0) + 1


def heats_in_round(heats: Sequence[Heat], round_number: int) -> List[Heat]:
    return [heat for heat in heats if heat.round_number == round_number]


def round_roster(
    racers: Sequence[Racer],
    round_number: int,
    round_heats: Sequence[Heat],
    rosters: Mapping[int, RoundRoster],
) -> List[Racer]:
    pinned = rosters.get(round_number)
    if pinned is not None:
        resolved = pinned.resolve(racers)
        if resolved:
            return resolved

    if round_number == 1:
        return list(racers)

    if not round_heats:
        return []

    # No pinned roster for a round that already has heats: rebuild it from
    # the racers who appear in them.
    logger.warning("Round %s has no pinned roster; rebuilding it from its heats", round_number)
    seen = {racer_id for heat in round_heats for racer_id in heat.racer_ids}
    return [racer for racer in racers if racer.id in seen]


def _number_heats(planned: Sequence[Heat], round_number: int, first_number: int) -> List[Heat]:
    return [
        Heat(lanes=list(heat.lanes), status=PENDING, round_number=round_number, heat_number=first_number + offset)
        for offset, heat in enumerate(planned)
    ]


def top_up_heat_queue(
    racers: Sequence[Racer],
    settings: PlanningSettings,
    heats: Sequence[Heat],
    standings: Sequence[Standing],
    rosters: Mapping[int, RoundRoster],
) -> QueueUpdate:
    """Queue more heats for the current round, or open the next round."""

    round_number = current_round(heats)
    update = QueueUpdate(round_number=round_number)
    if not racers:
        return update

    round_heats = heats_in_round(heats, round_number)
    roster = round_roster(racers, round_number, round_heats, rosters)
    if not roster:
        return update

    in_flight = sum(1 for heat in round_heats if heat.in_flight)
    first_number = next_heat_number(heats)

    if plan_next_heat(roster, settings.lane_count, settings.rounds, standings, round_heats) is not None:
        if in_flight >= settings.lookahead:
            return update
        planned = plan_heat_queue(
            roster, settings.lane_count, settings.rounds, standings, round_heats, settings.lookahead
        )
        update.heats = _number_heats(planned, round_number, first_number)
        logger.debug("Queued %s heat(s) for round %s", update.planned, round_number)
        return update

    if in_flight > 0 or len(roster) <= 2:
        return update

    survivors = select_survivors_for_next_round(roster, standings)
    next_round = round_number + 1
    update.round_number = next_round
    update.opened_roster = RoundRoster(round_number=next_round, racer_ids=[racer.id for racer in survivors])
    logger.info("Round %s complete: %s of %s racers advance", round_number, len(survivors), len(roster))

    planned = plan_heat_queue(survivors, settings.lane_count, settings.rounds, standings, [], settings.lookahead)
    update.heats = _number_heats(planned, next_round, first_number)
    return update


def is_event_complete(
    racers: Sequence[Racer],
    settings: PlanningSettings,
    heats: Sequence[Heat],
    standings: Sequence[Standing],
    rosters: Mapping[int, RoundRoster],
) -> bool:
    if not racers:
        return False

    round_number = current_round(heats)
    round_heats = heats_in_round(heats, round_number)
    if not round_heats or any(heat.in_flight for heat in round_heats):
        return False

    roster = round_roster(racers, round_number, round_heats, rosters)
    if len(roster) > 2:
        return False

    return plan_next_heat(roster, settings.lane_count, settings.rounds, standings, round_heats) is None
