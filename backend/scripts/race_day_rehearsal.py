"""CLI helper that runs a whole simulated race day against a scratch data store."""

from __future__ import annotations

import argparse
import random
import sys
import tempfile
from pathlib import Path
from typing import Dict, List

from derby_core import EventStore, RaceService


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--cars", type=int, default=50)
    parser.add_argument("--lanes", type=int, default=4)
    parser.add_argument("--rounds", type=int, default=1)
    parser.add_argument("--lookahead", type=int, choices=(2, 3), default=2)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--data-dir", type=Path, default=None)
    parser.add_argument("--event-name", default="Race Day Rehearsal")
    args = parser.parse_args(argv)
    for name in ("cars", "lanes", "rounds"):
        if getattr(args, name) <= 0:
            parser.error(f"--{name} must be positive")
    return args


def _next_pending(heats: List[Dict[str, object]]) -> Dict[str, object] | None:
    for heat in heats:
        if heat["status"] == "pending":
            return heat
    return None


def _race(heat: Dict[str, object], speeds: Dict[str, float], rng: random.Random) -> List[Dict[str, object]]:
    times = {
        lane["racer_id"]: speeds[lane["racer_id"]] + rng.uniform(-40, 40) for lane in heat["lanes"]
    }
    order = sorted(heat["lanes"], key=lambda lane: times[lane["racer_id"]])
    return [
        {
            "lane_number": lane["lane_number"],
            "racer_id": lane["racer_id"],
            "place": place,
            "time_ms": round(times[lane["racer_id"]], 1),
        }
        for place, lane in enumerate(order, start=1)
    ]


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    rng = random.Random(args.seed)
    data_dir = args.data_dir or Path(tempfile.mkdtemp(prefix="derby-rehearsal-"))

    service = RaceService(EventStore(data_dir=data_dir))
    event = service.store.create_event({"name": args.event_name, "laneCount": args.lanes})

    speeds: Dict[str, float] = {}
    for number in range(1, args.cars + 1):
        racer = service.store.register_racer(event["id"], {"carNumber": str(100 + number), "inspected": True})
        speeds[racer["id"]] = rng.uniform(2400, 2700)

    try:
        service.generate_heats(event["id"], rounds=args.rounds, lookahead=args.lookahead)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    heats_run = 0
    while True:
        heat = _next_pending(service.store.fetch_heats(event["id"]))
        if heat is None:
            break
        service.start_heat(heat["id"])
        service.record_results(heat["id"], _race(heat, speeds, rng))
        heats_run += 1

    heats = service.store.fetch_heats(event["id"])
    rosters = service.store.fetch_round_rosters(event["id"])
    print(f"Data: {data_dir}")
    print(f"Elimination plan: {service.elimination_plan(event['id'])}")
    for round_number in sorted(rosters):
        round_heats = [heat for heat in heats if heat["round"] == round_number]
        print(f"Round {round_number}: {len(rosters[round_number])} racers, {len(round_heats)} heats")
    print(f"Heats run: {heats_run}")

    status = service.store.fetch_event(event["id"])["status"]
    final_round = max(rosters) if rosters else 1
    racers = {racer["id"]: racer for racer in service.store.fetch_racers(event["id"])}
    standings = service.standings(event["id"])
    finalists = set(rosters.get(final_round, []))
    champion = next((row for row in standings if row["racer_id"] in finalists), None)
    if champion is not None:
        print(f"Champion: car {racers[champion['racer_id']]['car_number']}")

    if status != "complete":
        print(f"ERROR: event finished with status '{status}'", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
