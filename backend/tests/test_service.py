from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List

import pytest

from derby_core import EventStore, HeatConflictError, RaceService
from derby_core.standings import LaneResult, compute_standings
from derby_core.models import Racer


@pytest.fixture
def service(tmp_path) -> RaceService:
    return RaceService(EventStore(data_dir=tmp_path))


def _event_with_racers(service: RaceService, count: int, lane_count: int = 4) -> Dict[str, Any]:
    event = service.store.create_event({"name": "Pack 42 Derby", "laneCount": lane_count})
    for number in range(1, count + 1):
        service.store.register_racer(event["id"], {"carNumber": str(number), "inspected": True})
    return event


def _finish(heat: Dict[str, Any]) -> List[Dict[str, Any]]:
    # finish order follows racer id so the same racers keep winning
    car_order = sorted(heat["lanes"], key=lambda lane: lane["racer_id"])
    return [
        {"lane_number": lane["lane_number"], "racer_id": lane["racer_id"], "place": place, "time_ms": 2500 + place}
        for place, lane in enumerate(car_order, start=1)
    ]


def test_store_round_trips_through_json(tmp_path) -> None:
    store = EventStore(data_dir=tmp_path)
    event = store.create_event({"name": "Spring Derby"})

    reopened = EventStore(data_dir=tmp_path)

    assert reopened.fetch_event(event["id"])["name"] == "Spring Derby"
    assert reopened.fetch_event(event["id"])["lane_count"] == 4
    assert (tmp_path / "events_local.json").exists()


def test_default_lane_count_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DERBY_DEFAULT_LANE_COUNT", "6")

    store = EventStore(data_dir=tmp_path)

    assert store.create_event({"name": "Six Lane"})["lane_count"] == 6


def test_store_validates_input(tmp_path) -> None:
    store = EventStore(data_dir=tmp_path)
    event = store.create_event({"name": "Derby", "laneCount": 3})

    with pytest.raises(ValueError, match="Event name is required"):
        store.create_event({"name": "  "})
    with pytest.raises(ValueError, match="Lane count"):
        store.create_event({"name": "Derby", "laneCount": 0})
    with pytest.raises(ValueError, match="Car number is required"):
        store.register_racer(event["id"], {})

    store.register_racer(event["id"], {"carNumber": "7"})
    with pytest.raises(ValueError, match="already registered"):
        store.register_racer(event["id"], {"carNumber": "7"})
    with pytest.raises(ValueError, match="Event not found"):
        store.fetch_event("missing")
    with pytest.raises(ValueError, match="Heat not found"):
        store.find_heat("missing")


def test_unreadable_store_lists_nothing_but_refuses_writes(tmp_path) -> None:
    path = tmp_path / "events_local.json"
    path.write_text("{not json")
    store = EventStore(data_dir=tmp_path)

    assert store.fetch_events() == []
    with pytest.raises(RuntimeError, match="Failed to read local data store"):
        store.create_event({"name": "Late Entry"})
    assert path.read_text() == "{not json"


def test_truncated_store_keeps_existing_events(tmp_path) -> None:
    store = EventStore(data_dir=tmp_path)
    store.create_event({"name": "Spring Derby"})
    store.create_event({"name": "Fall Derby"})
    path = tmp_path / "events_local.json"
    content = path.read_text()
    path.write_text(content[: len(content) // 2])

    with pytest.raises(RuntimeError):
        store.create_event({"name": "Winter Derby"})

    path.write_text(content)
    assert sorted(event["name"] for event in store.fetch_events()) == ["Fall Derby", "Spring Derby"]


def test_writes_leave_no_temp_files(tmp_path) -> None:
    store = EventStore(data_dir=tmp_path)
    event = store.create_event({"name": "Derby"})
    store.register_racer(event["id"], {"carNumber": "1"})

    assert [path.name for path in tmp_path.iterdir()] == ["events_local.json"]


def test_generate_heats_requires_inspected_racers(service: RaceService) -> None:
    event = service.store.create_event({"name": "Derby"})
    service.store.register_racer(event["id"], {"carNumber": "1"})

    with pytest.raises(ValueError, match="No racers have passed inspection"):
        service.generate_heats(event["id"])


def test_generate_heats_fills_lookahead_and_pins_first_round(service: RaceService) -> None:
    event = _event_with_racers(service, 8)

    heats = service.generate_heats(event["id"], lookahead=3)

    assert len(heats) == 3
    assert [heat["heat_number"] for heat in heats] == [1, 2, 3]
    assert all(heat["round"] == 1 and heat["status"] == "pending" for heat in heats)
    assert len(service.store.fetch_round_rosters(event["id"])[1]) == 8
    assert service.store.fetch_settings(event["id"])["lookahead"] == 3
    assert service.store.fetch_event(event["id"])["status"] == "racing"


def test_generate_heats_clamps_lookahead_and_rejects_bad_lane_count(service: RaceService) -> None:
    event = _event_with_racers(service, 8)

    assert len(service.generate_heats(event["id"], lookahead=9)) == 3
    assert len(service.generate_heats(event["id"], lookahead=2)) == 2
    with pytest.raises(ValueError):
        service.generate_heats(event["id"], lane_count=0)


def test_only_one_heat_runs_at_a_time(service: RaceService) -> None:
    event = _event_with_racers(service, 8)
    first, second = service.generate_heats(event["id"])[:2]

    service.start_heat(first["id"])
    with pytest.raises(HeatConflictError):
        service.start_heat(second["id"])

    active = service.active_heat()
    assert active.running
    assert active.heat_id == first["id"]

    stopped = service.stop_active_heat()
    assert not stopped.running
    assert service.store.find_heat(first["id"])["status"] == "pending"
    assert service.start_heat(second["id"])["status"] == "running"


def test_running_heat_blocks_other_events(service: RaceService) -> None:
    first_event = _event_with_racers(service, 4)
    second_event = service.store.create_event({"name": "Other"})
    service.store.register_racer(second_event["id"], {"carNumber": "99", "inspected": True})
    first_heat = service.generate_heats(first_event["id"])[0]
    other_heat = service.generate_heats(second_event["id"])[0]

    service.start_heat(first_heat["id"])

    with pytest.raises(HeatConflictError):
        service.start_heat(other_heat["id"])


def test_completing_a_heat_tops_up_the_queue(service: RaceService) -> None:
    event = _event_with_racers(service, 8)
    first = service.generate_heats(event["id"], lookahead=2)[0]

    service.record_results(first["id"], _finish(first))

    heats = service.store.fetch_heats(event["id"])
    assert len(heats) == 3
    assert sum(1 for heat in heats if heat["status"] != "complete") == 2
    assert len(service.store.fetch_results(event["id"], first["id"])) == 4


def test_results_must_match_heat_lanes(service: RaceService) -> None:
    event = _event_with_racers(service, 4)
    heat = service.generate_heats(event["id"])[0]

    with pytest.raises(ValueError, match="Results are required"):
        service.record_results(heat["id"], [])
    with pytest.raises(ValueError, match="not part of this heat"):
        service.record_results(heat["id"], [{"lane_number": 9, "racer_id": "nobody", "place": 1}])


def test_full_event_runs_to_completion(service: RaceService) -> None:
    event = _event_with_racers(service, 5, lane_count=2)
    service.generate_heats(event["id"], lookahead=2)

    for _ in range(200):
        pending = [heat for heat in service.store.fetch_heats(event["id"]) if heat["status"] == "pending"]
        if not pending:
            break
        service.start_heat(pending[0]["id"])
        service.record_results(pending[0]["id"], _finish(pending[0]))

    rosters = service.store.fetch_round_rosters(event["id"])
    assert service.store.fetch_event(event["id"])["status"] == "complete"
    assert [len(rosters[number]) for number in sorted(rosters)] == [5, 3, 2]
    assert service.elimination_plan(event["id"]) == [5, 3, 2]
    assert service.active_heat().running is False

    standings = service.standings(event["id"])
    assert standings[0]["wins"] >= standings[-1]["wins"]


def test_reset_heats_clears_planning_state(service: RaceService) -> None:
    event = _event_with_racers(service, 4)
    heat = service.generate_heats(event["id"])[0]
    service.start_heat(heat["id"])

    service.reset_heats(event["id"])

    assert service.store.fetch_heats(event["id"]) == []
    assert service.store.fetch_settings(event["id"]) is None
    assert service.store.fetch_round_rosters(event["id"]) == {}
    assert service.active_heat().running is False


def test_compute_standings_counts_wins_losses_and_average() -> None:
    racers = [Racer(id="a", car_number="1"), Racer(id="b", car_number="2"), Racer(id="c", car_number="3")]
    results = [
        LaneResult(heat_id="h1", lane_number=1, racer_id="a", place=1, time_ms=2500),
        LaneResult(heat_id="h1", lane_number=2, racer_id="b", place=2, time_ms=2600),
        LaneResult(heat_id="h2", lane_number=1, racer_id="b", place=1, time_ms=2400),
        LaneResult(heat_id="h2", lane_number=2, racer_id="a", place=2, dnf=True),
        LaneResult(heat_id="h3", lane_number=1, racer_id="ghost", place=1),
    ]

    standings = compute_standings(racers, results)

    by_id = {standing.racer_id: standing for standing in standings}
    assert (by_id["a"].wins, by_id["a"].losses, by_id["a"].heats_run) == (1, 1, 2)
    assert by_id["a"].avg_time_ms == 2500
    assert by_id["b"].avg_time_ms == 2500
    assert by_id["c"].avg_time_ms is None
    assert [standing.racer_id for standing in standings] == ["a", "b", "c"]


def test_delete_event_releases_running_heat_and_lock(service: RaceService) -> None:
    event = _event_with_racers(service, 4)
    heat = service.generate_heats(event["id"])[0]
    service.start_heat(heat["id"])

    service.delete_event(event["id"])

    assert event["id"] not in service._event_locks
    assert service.active_heat().running is False
    with pytest.raises(ValueError, match="Event not found"):
        service.store.fetch_event(event["id"])


@pytest.mark.parametrize("finish", ["record_results", "complete_heat"])
def test_concurrent_completions_keep_queue_consistent(service: RaceService, finish: str) -> None:
    event = _event_with_racers(service, 12)
    service.generate_heats(event["id"], lookahead=3)

    for _ in range(4):
        in_flight = [heat for heat in service.store.fetch_heats(event["id"]) if heat["status"] != "complete"]
        if not in_flight:
            break
        barrier = threading.Barrier(len(in_flight))

        def finish_heat(heat: Dict[str, Any]) -> None:
            barrier.wait()
            if finish == "record_results":
                service.record_results(heat["id"], _finish(heat))
            else:
                service.complete_heat(heat["id"])

        with ThreadPoolExecutor(max_workers=len(in_flight)) as pool:
            for future in [pool.submit(finish_heat, heat) for heat in in_flight]:
                future.result()

        heats = service.store.fetch_heats(event["id"])
        numbers = [heat["heat_number"] for heat in heats]
        assert len(numbers) == len(set(numbers))
        assert sum(1 for heat in heats if heat["status"] != "complete") <= 3


def test_running_heat_holds_while_other_event_writes(service: RaceService) -> None:
    first_event = _event_with_racers(service, 4)
    second_event = _event_with_racers(service, 4)
    running = service.generate_heats(first_event["id"])[0]
    waiting = service.generate_heats(second_event["id"])[0]
    service.start_heat(running["id"])
    stop = threading.Event()

    def register_racers() -> None:
        number = 100
        while not stop.is_set():
            service.store.register_racer(second_event["id"], {"carNumber": str(number)})
            number += 1

    writer = threading.Thread(target=register_racers)
    writer.start()
    try:
        for _ in range(50):
            with pytest.raises(HeatConflictError):
                service.start_heat(waiting["id"])
    finally:
        stop.set()
        writer.join()

    running_heats = [
        heat for stored in service.store.fetch_events() for heat in stored["heats"] if heat["status"] == "running"
    ]
    assert [heat["id"] for heat in running_heats] == [running["id"]]
