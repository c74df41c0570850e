from __future__ import annotations

import math
from functools import cmp_to_key
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Racer, Standing, compare_car_numbers


def next_field_size(current: int) -> int:
    """Roughly halve the field, never cutting below two cars."""

    if current <= 2:
        return max(1, current)
    return max(2, math.ceil(current / 2))


def build_elimination_plan(starting_field_size: int) -> List[int]:
    if starting_field_size <= 0:
        return []

    plan = [starting_field_size]
    current = starting_field_size
    while current > 2:
        next_size = next_field_size(current)
        if next_size == current:
            break
        plan.append(next_size)
        current = next_size
    return plan


def _compare_average_times(a: Optional[float], b: Optional[float]) -> int:
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    return (a > b) - (a < b)


def rank_racers(racers: Iterable[Racer], standings: Iterable[Standing]) -> List[Racer]:
    """Order racers best first: wins, fewer losses, faster average, more heats."""

    by_racer: Dict[str, Standing] = {standing.racer_id: standing for standing in standings}
    empty = Standing(racer_id="")

    def compare(a: Racer, b: Racer) -> int:
        first = by_racer.get(a.id, empty)
        second = by_racer.get(b.id, empty)
        if first.wins != second.wins:
            return second.wins - first.wins
        if first.losses != second.losses:
            return first.losses - second.losses
        average = _compare_average_times(first.avg_time_ms, second.avg_time_ms)
        if average:
            return average
        if first.heats_run != second.heats_run:
            return second.heats_run - first.heats_run
        return compare_car_numbers(a.car_number, b.car_number)

    return sorted(racers, key=cmp_to_key(compare))


def select_survivors_for_next_round(
    active_racers: Sequence[Racer], standings: Iterable[Standing]
) -> List[Racer]:
    if len(active_racers) <= 2:
        return list(active_racers)

    return rank_racers(active_racers, standings)[: next_field_size(len(active_racers))]
