"""Race-day orchestration around the planner.

The planner is pure; this module owns everything it leaves to its caller:
per-event settings, the pinned round rosters, the rule that only one heat runs
at a time, and serializing planning per event so two completions arriving
together cannot both append heats.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .elimination import build_elimination_plan
from .heat_planner import clamp_lookahead
from .loader import EventStore
from .models import COMPLETE, PENDING, RUNNING, Heat, HeatLane, Racer, RoundRoster, Standing
from .rounds import PlanningSettings, QueueUpdate, is_event_complete, top_up_heat_queue
from .standings import LaneResult, compute_standings

logger = logging.getLogger(__name__)


class HeatConflictError(Exception):
    """Raised when a heat would start while another one is running."""


@dataclass
class ActiveHeat:
    heat_id: Optional[str] = None
    event_id: Optional[str] = None
    running: bool = False
    elapsed_ms: int = 0


def _elapsed_ms(started_at: Optional[str]) -> int:
    if not started_at:
        return 0
    try:
        started = dt.datetime.fromisoformat(started_at.replace("Z", "+00:00"))
    except ValueError:
        return 0
    return max(0, int((dt.datetime.now(dt.UTC) - started).total_seconds() * 1000))


class RaceService:
    def __init__(self, store: EventStore | None = None) -> None:
        self.store = store or EventStore()
        self._locks_guard = threading.Lock()
        self._event_locks: Dict[str, threading.Lock] = {}
        self._running_lock = threading.Lock()

    def _event_lock(self, event_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._event_locks.setdefault(event_id, threading.Lock())

    # Snapshot conversion ----------------------------------------------------

    @staticmethod
    def _racers(event: Dict[str, Any]) -> List[Racer]:
        return [
            Racer(id=row["id"], car_number=row.get("car_number", ""))
            for row in event.get("racers", [])
            if row.get("inspected")
        ]

    @staticmethod
    def _heats(event: Dict[str, Any]) -> List[Heat]:
        return [
            Heat(
                lanes=[HeatLane(lane_number=lane["lane_number"], racer_id=lane["racer_id"]) for lane in row.get("lanes", [])],
                status=row.get("status", PENDING),
                round_number=row.get("round", 1),
                heat_number=row.get("heat_number", 0),
                heat_id=row.get("id"),
            )
            for row in event.get("heats", [])
        ]

    @staticmethod
    def _settings(event: Dict[str, Any]) -> PlanningSettings:
        stored = event.get("settings")
        if stored:
            return PlanningSettings(
                lane_count=int(stored.get("laneCount", event["lane_count"])),
                rounds=max(1, int(stored.get("rounds", 1))),
                lookahead=clamp_lookahead(stored.get("lookahead")),
            )
        return PlanningSettings(lane_count=int(event["lane_count"]))

    @staticmethod
    def _rosters(event: Dict[str, Any]) -> Dict[int, RoundRoster]:
        raw = event.get("round_rosters") or {}
        return {
            int(round_number): RoundRoster(round_number=int(round_number), racer_ids=list(ids))
            for round_number, ids in raw.items()
        }

    @staticmethod
    def _standings(event: Dict[str, Any], racers: List[Racer]) -> List[Standing]:
        results = [LaneResult.from_record(row) for row in event.get("results", [])]
        return compute_standings(racers, results)

    # Planning ---------------------------------------------------------------

    def _advance(self, event_id: str) -> QueueUpdate:
        # Caller must hold the event lock.
        event = self.store.fetch_event(event_id)
        racers = self._racers(event)
        heats = self._heats(event)
        settings = self._settings(event)
        standings = self._standings(event, racers)
        rosters = self._rosters(event)

        update = top_up_heat_queue(racers, settings, heats, standings, rosters)
        if update.opened_roster is not None:
            self.store.save_round_roster(event_id, update.opened_roster.round_number, update.opened_roster.racer_ids)
            rosters[update.opened_roster.round_number] = update.opened_roster
        if update.heats:
            self.store.append_heats(
                event_id,
                [
                    {
                        "round": heat.round_number,
                        "heat_number": heat.heat_number,
                        "lanes": [{"lane_number": lane.lane_number, "racer_id": lane.racer_id} for lane in heat.lanes],
                    }
                    for heat in update.heats
                ],
            )
            return update

        if event.get("status") != "complete" and is_event_complete(racers, settings, heats, standings, rosters):
            self.store.update_event(event_id, {"status": "complete"})
            logger.info("Event %s complete after round %s", event_id, update.round_number)
        return update

    def generate_heats(
        self,
        event_id: str,
        lane_count: Optional[int] = None,
        rounds: Optional[int] = None,
        lookahead: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._event_lock(event_id):
            event = self.store.fetch_event(event_id)
            racers = self._racers(event)
            if not racers:
                raise ValueError("No racers have passed inspection")

            settings = PlanningSettings.from_payload(
                {
                    "laneCount": lane_count if lane_count is not None else event["lane_count"],
                    "rounds": max(1, rounds if rounds is not None else 1),
                    "lookahead": clamp_lookahead(lookahead),
                }
            )

            self._release_running_heat(event_id)
            self.store.delete_heats(event_id)
            self.store.clear_settings(event_id)
            self.store.clear_round_rosters(event_id)

            self.store.save_settings(event_id, settings.to_payload())
            self.store.save_round_roster(event_id, 1, [racer.id for racer in racers])
            self.store.update_event(event_id, {"status": "racing"})
            update = self._advance(event_id)
            logger.info(
                "Generated %s heat(s) for event %s (%s racers, %s lanes)",
                update.planned,
                event_id,
                len(racers),
                settings.lane_count,
            )
            return self.store.fetch_heats(event_id)

    def reset_heats(self, event_id: str) -> None:
        with self._event_lock(event_id):
            self._release_running_heat(event_id)
            self.store.delete_heats(event_id)
            self.store.clear_settings(event_id)
            self.store.clear_round_rosters(event_id)

    def delete_event(self, event_id: str) -> None:
        with self._event_lock(event_id):
            self._release_running_heat(event_id)
            self.store.delete_event(event_id)
        with self._locks_guard:
            self._event_locks.pop(event_id, None)

    # Running heat -----------------------------------------------------------

    def _release_running_heat(self, event_id: str) -> None:
        with self._running_lock:
            running = self.store.find_running_heat()
            if running and running["event_id"] == event_id:
                self.store.update_heat_status(running["id"], PENDING)

    def active_heat(self) -> ActiveHeat:
        running = self.store.find_running_heat()
        if running is None:
            return ActiveHeat()
        return ActiveHeat(
            heat_id=running["id"],
            event_id=running["event_id"],
            running=True,
            elapsed_ms=_elapsed_ms(running.get("started_at")),
        )

    def start_heat(self, heat_id: str) -> Dict[str, Any]:
        with self._running_lock:
            running = self.store.find_running_heat()
            if running and running["id"] != heat_id:
                raise HeatConflictError("Another heat is already running")
            heat = self.store.find_heat(heat_id)
            if heat.get("status") == COMPLETE:
                raise ValueError("Heat is already complete")
            return self.store.update_heat_status(heat_id, RUNNING)

    def stop_active_heat(self) -> ActiveHeat:
        with self._running_lock:
            running = self.store.find_running_heat()
            if running is None:
                return ActiveHeat()
            elapsed = _elapsed_ms(running.get("started_at"))
            self.store.update_heat_status(running["id"], PENDING)
            return ActiveHeat(heat_id=running["id"], event_id=running["event_id"], running=False, elapsed_ms=elapsed)

    # Completion -------------------------------------------------------------

    def complete_heat(self, heat_id: str) -> Dict[str, Any]:
        event_id = self.store.find_heat(heat_id)["event_id"]
        with self._event_lock(event_id):
            heat = self.store.update_heat_status(heat_id, COMPLETE)
            self._advance(event_id)
        return heat

    def record_results(self, heat_id: str, results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not results:
            raise ValueError("Results are required")
        event_id = self.store.find_heat(heat_id)["event_id"]

        rows = []
        for item in results:
            result = LaneResult.from_record({**item, "heat_id": heat_id})
            if result.place < 1:
                raise ValueError("Place must be at least 1")
            rows.append(
                {
                    "lane_number": result.lane_number,
                    "racer_id": result.racer_id,
                    "place": result.place,
                    "time_ms": result.time_ms,
                    "dnf": result.dnf,
                }
            )

        with self._event_lock(event_id):
            saved = self.store.save_results(heat_id, rows)
            self.store.update_heat_status(heat_id, COMPLETE)
            self._advance(event_id)
        return saved

    # Reporting --------------------------------------------------------------

    def standings(self, event_id: str) -> List[Dict[str, Any]]:
        event = self.store.fetch_event(event_id)
        racers = self._racers(event)
        car_numbers = {row["id"]: row.get("car_number", "") for row in event.get("racers", [])}
        names = {row["id"]: row.get("name", "") for row in event.get("racers", [])}
        return [
            {
                "racer_id": standing.racer_id,
                "car_number": car_numbers.get(standing.racer_id, ""),
                "name": names.get(standing.racer_id, ""),
                "wins": standing.wins,
                "losses": standing.losses,
                "heats_run": standing.heats_run,
                "avg_time_ms": standing.avg_time_ms,
            }
            for standing in self._standings(event, racers)
        ]

    def elimination_plan(self, event_id: str) -> List[int]:
        event = self.store.fetch_event(event_id)
        return build_elimination_plan(len(self._racers(event)))
