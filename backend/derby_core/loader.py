from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_STATUSES = ("draft", "checkin", "racing", "complete")
DEFAULT_LANE_COUNT = 4


class EventStore:
    """Keeps events, racers, heats and results in a local JSON file."""

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize the EventStore.

        Args:
            data_dir: Directory holding ``events_local.json``. Defaults to
                ``$DERBY_DATA_DIR`` or ``backend/data``.
        """
        env_dir = os.getenv("DERBY_DATA_DIR", "")
        self.data_dir = data_dir or (Path(env_dir) if env_dir else Path(__file__).parent.parent / "data")
        self.events_path = self.data_dir / "events_local.json"
        try:
            self.default_lane_count = int(os.getenv("DERBY_DEFAULT_LANE_COUNT", DEFAULT_LANE_COUNT))
        except ValueError:
            logger.warning("Ignoring invalid DERBY_DEFAULT_LANE_COUNT; using %s", DEFAULT_LANE_COUNT)
            self.default_lane_count = DEFAULT_LANE_COUNT
        self._lock = threading.RLock()

    # Events -----------------------------------------------------------------

    def create_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Event name is required")

        lane_count_raw = payload.get("laneCount", payload.get("lane_count"))
        try:
            lane_count = int(lane_count_raw) if lane_count_raw is not None else self.default_lane_count
        except (TypeError, ValueError) as exc:
            raise ValueError("Lane count must be a whole number") from exc
        if lane_count < 1:
            raise ValueError("Lane count must be at least 1")

        event = {
            "id": str(uuid.uuid4()),
            "name": name,
            "lane_count": lane_count,
            "status": "draft",
            "created_at": self._utc_now_iso(),
            "racers": [],
            "heats": [],
            "results": [],
            "settings": None,
            "round_rosters": {},
        }
        with self._lock:
            events = self._load_events(strict=True)
            events.append(event)
            self._save_events(events)
        return event

    def fetch_events(self) -> List[Dict[str, Any]]:
        return self._load_events()

    def fetch_event(self, event_id: str) -> Dict[str, Any]:
        for event in self._load_events():
            if event.get("id") == event_id:
                return event
        raise ValueError("Event not found")

    def update_event(self, event_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        status = changes.get("status")
        if status is not None and status not in EVENT_STATUSES:
            raise ValueError(f"Unknown event status '{status}'")

        def apply(event: Dict[str, Any]) -> Dict[str, Any]:
            for key in ("name", "lane_count", "status"):
                if key in changes and changes[key] is not None:
                    event[key] = changes[key]
            return event

        return self._mutate_event(event_id, apply)

    def delete_event(self, event_id: str) -> None:
        with self._lock:
            events = self._load_events(strict=True)
            remaining = [event for event in events if event.get("id") != event_id]
            if len(remaining) == len(events):
                raise ValueError("Event not found")
            self._save_events(remaining)

    # Racers -----------------------------------------------------------------

    def register_racer(self, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        car_number = str(payload.get("carNumber", payload.get("car_number")) or "").strip()
        if not car_number:
            raise ValueError("Car number is required")

        racer = {
            "id": str(uuid.uuid4()),
            "car_number": car_number,
            "name": str(payload.get("name") or "").strip(),
            "inspected": bool(payload.get("inspected", False)),
            "created_at": self._utc_now_iso(),
        }

        def apply(event: Dict[str, Any]) -> Dict[str, Any]:
            for existing in event["racers"]:
                if existing.get("car_number") == car_number:
                    raise ValueError(f"Car number {car_number} is already registered")
            event["racers"].append(racer)
            return racer

        return self._mutate_event(event_id, apply)

    def inspect_racer(self, event_id: str, racer_id: str, passed: bool) -> Dict[str, Any]:
        def apply(event: Dict[str, Any]) -> Dict[str, Any]:
            for racer in event["racers"]:
                if racer.get("id") == racer_id:
                    racer["inspected"] = bool(passed)
                    return racer
            raise ValueError("Racer not found")

        return self._mutate_event(event_id, apply)

    def fetch_racers(self, event_id: str, inspected_only: bool = False) -> List[Dict[str, Any]]:
        racers = self.fetch_event(event_id)["racers"]
        if inspected_only:
            return [racer for racer in racers if racer.get("inspected")]
        return list(racers)

    # Heats ------------------------------------------------------------------

    def fetch_heats(self, event_id: str) -> List[Dict[str, Any]]:
        heats = self.fetch_event(event_id)["heats"]
        return sorted(heats, key=lambda heat: heat.get("heat_number", 0))

    def find_heat(self, heat_id: str) -> Dict[str, Any]:
        for event in self._load_events():
            for heat in event.get("heats", []):
                if heat.get("id") == heat_id:
                    return {**heat, "event_id": event["id"]}
        raise ValueError("Heat not found")

    def find_running_heat(self) -> Optional[Dict[str, Any]]:
        for event in self._load_events():
            for heat in event.get("heats", []):
                if heat.get("status") == "running":
                    return {**heat, "event_id": event["id"]}
        return None

    def append_heats(self, event_id: str, heats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        records = [self._heat_record(heat) for heat in heats]

        def apply(event: Dict[str, Any]) -> List[Dict[str, Any]]:
            event["heats"].extend(records)
            return records

        return self._mutate_event(event_id, apply)

    def delete_heats(self, event_id: str) -> None:
        def apply(event: Dict[str, Any]) -> None:
            heat_ids = {heat.get("id") for heat in event["heats"]}
            event["heats"] = []
            event["results"] = [row for row in event["results"] if row.get("heat_id") not in heat_ids]

        self._mutate_event(event_id, apply)

    def update_heat_status(self, heat_id: str, status: str) -> Dict[str, Any]:
        if status not in ("pending", "running", "complete"):
            raise ValueError(f"Unknown heat status '{status}'")
        event_id = self.find_heat(heat_id)["event_id"]
        now = self._utc_now_iso()

        def apply(event: Dict[str, Any]) -> Dict[str, Any]:
            for heat in event["heats"]:
                if heat.get("id") != heat_id:
                    continue
                heat["status"] = status
                if status == "running":
                    heat["started_at"] = now
                elif status == "complete":
                    heat["completed_at"] = now
                else:
                    heat["started_at"] = None
                return {**heat, "event_id": event_id}
            raise ValueError("Heat not found")

        return self._mutate_event(event_id, apply)

    # Results ----------------------------------------------------------------

    def save_results(self, heat_id: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        heat = self.find_heat(heat_id)
        lanes = {(lane["lane_number"], lane["racer_id"]) for lane in heat.get("lanes", [])}
        records = []
        for row in rows:
            key = (row.get("lane_number"), row.get("racer_id"))
            if key not in lanes:
                raise ValueError(f"Lane {key[0]} / racer {key[1]} is not part of this heat")
            records.append({"id": str(uuid.uuid4()), "heat_id": heat_id, **row})

        def apply(event: Dict[str, Any]) -> List[Dict[str, Any]]:
            event["results"] = [row for row in event["results"] if row.get("heat_id") != heat_id]
            event["results"].extend(records)
            return records

        return self._mutate_event(heat["event_id"], apply)

    def fetch_results(self, event_id: str, heat_id: str | None = None) -> List[Dict[str, Any]]:
        results = self.fetch_event(event_id)["results"]
        if heat_id is None:
            return list(results)
        return [row for row in results if row.get("heat_id") == heat_id]

    # Planning settings and round rosters -------------------------------------

    def fetch_settings(self, event_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_event(event_id).get("settings")

    def save_settings(self, event_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        record = {**settings, "updated_at": self._utc_now_iso()}

        def apply(event: Dict[str, Any]) -> Dict[str, Any]:
            event["settings"] = record
            return record

        return self._mutate_event(event_id, apply)

    def clear_settings(self, event_id: str) -> None:
        self._mutate_event(event_id, lambda event: event.update(settings=None))

    def fetch_round_rosters(self, event_id: str) -> Dict[int, List[str]]:
        raw = self.fetch_event(event_id).get("round_rosters") or {}
        return {int(round_number): list(ids) for round_number, ids in raw.items()}

    def save_round_roster(self, event_id: str, round_number: int, racer_ids: List[str]) -> None:
        unique_ids = list(dict.fromkeys(racer_ids))

        def apply(event: Dict[str, Any]) -> None:
            event.setdefault("round_rosters", {})[str(round_number)] = unique_ids

        self._mutate_event(event_id, apply)

    def clear_round_rosters(self, event_id: str) -> None:
        self._mutate_event(event_id, lambda event: event.update(round_rosters={}))

    # Helpers ----------------------------------------------------------------

    def _heat_record(self, heat: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": heat.get("id") or str(uuid.uuid4()),
            "round": int(heat["round"]),
            "heat_number": int(heat["heat_number"]),
            "status": heat.get("status") or "pending",
            "lanes": [
                {"lane_number": int(lane["lane_number"]), "racer_id": str(lane["racer_id"])}
                for lane in heat.get("lanes", [])
            ],
            "started_at": None,
            "completed_at": None,
            "created_at": self._utc_now_iso(),
        }

    def _mutate_event(self, event_id: str, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        with self._lock:
            events = self._load_events(strict=True)
            for event in events:
                if event.get("id") == event_id:
                    result = fn(event)
                    self._save_events(events)
                    return result
        raise ValueError("Event not found")

    def _load_events(self, strict: bool = False) -> List[Dict[str, Any]]:
        """Read every event under the store lock.

        Writers must pass ``strict=True``: saving after a failed read would
        replace the whole file with the fallback.
        """
        with self._lock:
            data = self._read_json_file(self.events_path, [], strict=strict)
        return [row for row in data if isinstance(row, dict)]

    def _save_events(self, events: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._write_json_file(self.events_path, events)

    def _read_json_file(self, path: Path, default: Any, strict: bool = False) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            if strict:
                raise RuntimeError(f"Failed to read local data store {path}") from exc
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
