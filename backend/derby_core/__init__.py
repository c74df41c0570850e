"""Heat scheduling and elimination engine for derby race days."""

from .elimination import build_elimination_plan, next_field_size, select_survivors_for_next_round
from .heat_planner import clamp_lookahead, plan_heat_queue, plan_next_heat
from .lanes import PlanningInvariantError
from .loader import EventStore
from .models import Heat, HeatLane, Racer, RoundRoster, Standing
from .rounds import PlanningSettings, is_event_complete, top_up_heat_queue
from .service import ActiveHeat, HeatConflictError, RaceService

__all__ = [
    "ActiveHeat",
    "EventStore",
    "Heat",
    "HeatConflictError",
    "HeatLane",
    "PlanningInvariantError",
    "PlanningSettings",
    "RaceService",
    "Racer",
    "RoundRoster",
    "Standing",
    "build_elimination_plan",
    "clamp_lookahead",
    "is_event_complete",
    "next_field_size",
    "plan_heat_queue",
    "plan_next_heat",
    "select_survivors_for_next_round",
    "top_up_heat_queue",
]
