from __future__ import annotations

from typing import Dict, List

import pytest

from derby_core import Heat, HeatLane, PlanningSettings, Racer, RoundRoster, Standing
from derby_core.rounds import current_round, is_event_complete, next_heat_number, round_roster, top_up_heat_queue


def _racers(count: int) -> List[Racer]:
    return [Racer(id=f"r{idx + 1}", car_number=str(idx + 1)) for idx in range(count)]


def _standings(racers: List[Racer]) -> List[Standing]:
    # r1 is the strongest, each later racer one win worse
    size = len(racers)
    return [
        Standing(racer_id=racer.id, wins=size - idx, losses=idx, heats_run=size, avg_time_ms=2500 + idx)
        for idx, racer in enumerate(racers)
    ]


def _drive(racers, settings, standings, rosters: Dict[int, RoundRoster], limit: int = 500) -> List[Heat]:
    heats: List[Heat] = []
    for _ in range(limit):
        update = top_up_heat_queue(racers, settings, heats, standings, rosters)
        if update.opened_roster is not None:
            rosters[update.opened_roster.round_number] = update.opened_roster
        heats.extend(update.heats)

        in_flight = [heat for heat in heats if heat.in_flight]
        if not in_flight:
            return heats
        in_flight[0].status = "complete"
    pytest.fail("event never settled")


def test_event_narrows_to_two_finalists_and_completes() -> None:
    racers = _racers(5)
    standings = _standings(racers)
    settings = PlanningSettings(lane_count=2, rounds=1, lookahead=3)
    rosters: Dict[int, RoundRoster] = {}

    heats = _drive(racers, settings, standings, rosters)

    assert rosters[2].racer_ids == ["r1", "r2", "r3"]
    assert rosters[3].racer_ids == ["r1", "r2"]
    assert 4 not in rosters
    assert current_round(heats) == 3
    assert [heat.heat_number for heat in heats] == list(range(1, len(heats) + 1))
    assert all(heat.status == "complete" for heat in heats)
    final = [heat for heat in heats if heat.round_number == 3]
    assert {lane.racer_id for heat in final for lane in heat.lanes} == {"r1", "r2"}
    assert is_event_complete(racers, settings, heats, standings, rosters)


def test_each_round_covers_every_lane_for_its_roster() -> None:
    racers = _racers(6)
    standings = _standings(racers)
    settings = PlanningSettings(lane_count=3, rounds=1, lookahead=2)
    rosters: Dict[int, RoundRoster] = {}

    heats = _drive(racers, settings, standings, rosters)

    for round_number in range(1, current_round(heats) + 1):
        roster = rosters[round_number].racer_ids if round_number in rosters else [racer.id for racer in racers]
        runs = {
            (lane.racer_id, lane.lane_number)
            for heat in heats
            if heat.round_number == round_number
            for lane in heat.lanes
        }
        for racer_id in roster:
            for lane_number in (1, 2, 3):
                assert (racer_id, lane_number) in runs


def test_queue_waits_while_window_is_full() -> None:
    racers = _racers(8)
    settings = PlanningSettings(lane_count=4, rounds=1, lookahead=2)

    first = top_up_heat_queue(racers, settings, [], [], {})
    second = top_up_heat_queue(racers, settings, first.heats, [], {})

    assert first.planned == 2
    assert [heat.heat_number for heat in first.heats] == [1, 2]
    assert second.planned == 0
    assert second.opened_roster is None


def test_round_does_not_advance_while_heats_are_in_flight() -> None:
    racers = _racers(3)
    settings = PlanningSettings(lane_count=1, rounds=1, lookahead=3)
    heats = [
        Heat(lanes=[HeatLane(1, "r1")], status="complete", round_number=1, heat_number=1),
        Heat(lanes=[HeatLane(1, "r2")], status="complete", round_number=1, heat_number=2),
        Heat(lanes=[HeatLane(1, "r3")], status="running", round_number=1, heat_number=3),
    ]

    update = top_up_heat_queue(racers, settings, heats, _standings(racers), {})

    assert update.planned == 0
    assert update.opened_roster is None
    assert update.round_number == 1


def test_two_racer_round_does_not_open_another_round() -> None:
    racers = _racers(2)
    settings = PlanningSettings(lane_count=1, rounds=1, lookahead=3)
    heats = [
        Heat(lanes=[HeatLane(1, "r1")], status="complete", round_number=1, heat_number=1),
        Heat(lanes=[HeatLane(1, "r2")], status="complete", round_number=1, heat_number=2),
    ]

    update = top_up_heat_queue(racers, settings, heats, [], {})

    assert update.planned == 0
    assert update.opened_roster is None
    assert is_event_complete(racers, settings, heats, [], {})


def test_event_not_complete_before_any_heat() -> None:
    racers = _racers(2)
    settings = PlanningSettings(lane_count=2)

    assert not is_event_complete(racers, settings, [], [], {})
    assert not is_event_complete([], settings, [], [], {})


def test_heat_numbering_continues_across_rounds() -> None:
    heats = [
        Heat(lanes=[], round_number=1, heat_number=7),
        Heat(lanes=[], round_number=2, heat_number=3),
    ]

    assert current_round(heats) == 2
    assert next_heat_number(heats) == 8
    assert current_round([]) == 1
    assert next_heat_number([]) == 1


def test_round_roster_prefers_pinned_roster() -> None:
    racers = _racers(4)
    rosters = {2: RoundRoster(round_number=2, racer_ids=["r3", "r1", "gone"])}

    assert [racer.id for racer in round_roster(racers, 2, [], rosters)] == ["r3", "r1"]
    assert round_roster(racers, 1, [], {}) == racers


def test_round_roster_never_guessed_for_empty_later_round() -> None:
    assert round_roster(_racers(4), 2, [], {}) == []


def test_round_roster_rebuilt_from_heats_without_pin() -> None:
    racers = _racers(4)
    heats = [Heat(lanes=[HeatLane(1, "r4"), HeatLane(2, "r2")], round_number=3, heat_number=9)]

    assert [racer.id for racer in round_roster(racers, 3, heats, {})] == ["r2", "r4"]


def test_settings_from_payload_validates() -> None:
    settings = PlanningSettings.from_payload({"laneCount": "4", "rounds": 2, "lookahead": 2})
    assert settings == PlanningSettings(lane_count=4, rounds=2, lookahead=2)
    assert PlanningSettings.from_payload({"lane_count": 3}).lookahead == 3

    with pytest.raises(ValueError):
        PlanningSettings.from_payload({"laneCount": 4, "lookahead": 4})
    with pytest.raises(ValueError):
        PlanningSettings.from_payload({"laneCount": 0})
    with pytest.raises(ValueError):
        PlanningSettings.from_payload({"laneCount": 4, "rounds": 0})
    with pytest.raises(ValueError):
        PlanningSettings.from_payload({})
