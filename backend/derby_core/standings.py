from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .elimination import rank_racers
from .models import Racer, Standing


@dataclass
class LaneResult:
    """A single racer's finish in a heat."""

    heat_id: str
    lane_number: int
    racer_id: str
    place: int
    time_ms: Optional[float] = None
    dnf: bool = False

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "LaneResult":
        time_ms = record.get("timeMs", record.get("time_ms"))
        return cls(
            heat_id=str(record.get("heatId", record.get("heat_id", ""))),
            lane_number=int(record.get("laneNumber", record.get("lane_number", 0))),
            racer_id=str(record.get("racerId", record.get("racer_id", ""))),
            place=int(record.get("place", 0)),
            time_ms=float(time_ms) if time_ms is not None else None,
            dnf=bool(record.get("dnf", False)),
        )

    @property
    def is_win(self) -> bool:
        return not self.dnf and self.place == 1


def compute_standings(racers: Iterable[Racer], results: Iterable[LaneResult]) -> List[Standing]:
    """Tally wins and losses per racer and return them best first.

    A win is a first place that was not a DNF; every other recorded result is a
    loss. The average only counts finished runs with a time.
    """

    racers = list(racers)
    standings: Dict[str, Standing] = {racer.id: Standing(racer_id=racer.id) for racer in racers}
    times: Dict[str, List[float]] = {racer.id: [] for racer in racers}

    for result in results:
        standing = standings.get(result.racer_id)
        if standing is None:
            continue
        standing.heats_run += 1
        if result.is_win:
            standing.wins += 1
        else:
            standing.losses += 1
        if not result.dnf and result.time_ms is not None:
            times[result.racer_id].append(result.time_ms)

    for racer_id, racer_times in times.items():
        if racer_times:
            standings[racer_id].avg_time_ms = sum(racer_times) / len(racer_times)

    ordered = rank_racers(racers, standings.values())
    return [standings[racer.id] for racer in ordered]
