from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from derby_core import HeatConflictError, RaceService

app = FastAPI(title="Derby Race Day API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)


class EventCreatePayload(BaseModel):
    name: str
    lane_count: Optional[int] = Field(default=None, alias="laneCount", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class EventResponseModel(BaseModel):
    id: str
    name: str
    lane_count: int = Field(alias="laneCount")
    status: str
    created_at: str = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class EventListResponse(BaseModel):
    events: List[EventResponseModel]


class RacerCreatePayload(BaseModel):
    car_number: str = Field(alias="carNumber")
    name: str = ""
    inspected: bool = False

    model_config = ConfigDict(populate_by_name=True)


class InspectPayload(BaseModel):
    event_id: str = Field(alias="eventId")
    weight_ok: bool = Field(default=False, alias="weightOk")

    model_config = ConfigDict(populate_by_name=True)


class RacerResponseModel(BaseModel):
    id: str
    car_number: str = Field(alias="carNumber")
    name: str = ""
    inspected: bool

    model_config = ConfigDict(populate_by_name=True)


class HeatLaneModel(BaseModel):
    lane_number: int = Field(alias="laneNumber", ge=1)
    racer_id: str = Field(alias="racerId")

    model_config = ConfigDict(populate_by_name=True)


class HeatResponseModel(BaseModel):
    id: str
    event_id: Optional[str] = Field(default=None, alias="eventId")
    round: int
    heat_number: int = Field(alias="heatNumber")
    status: str
    lanes: List[HeatLaneModel]
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")

    model_config = ConfigDict(populate_by_name=True)


class GenerateHeatsPayload(BaseModel):
    lane_count: Optional[int] = Field(default=None, alias="laneCount", ge=1)
    rounds: Optional[int] = Field(default=None, ge=1)
    lookahead: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class LaneResultPayload(BaseModel):
    lane_number: int = Field(alias="laneNumber", ge=1)
    racer_id: str = Field(alias="racerId")
    place: int = Field(ge=1)
    time_ms: Optional[float] = Field(default=None, alias="timeMs", ge=0)
    dnf: bool = False

    model_config = ConfigDict(populate_by_name=True)


class ResultsPayload(BaseModel):
    results: List[LaneResultPayload] = Field(min_length=1)


class LaneResultModel(BaseModel):
    id: str
    heat_id: str = Field(alias="heatId")
    lane_number: int = Field(alias="laneNumber")
    racer_id: str = Field(alias="racerId")
    place: int
    time_ms: Optional[float] = Field(default=None, alias="timeMs")
    dnf: bool = False

    model_config = ConfigDict(populate_by_name=True)


class StandingModel(BaseModel):
    racer_id: str = Field(alias="racerId")
    car_number: str = Field(alias="carNumber")
    name: str = ""
    wins: int
    losses: int
    heats_run: int = Field(alias="heatsRun")
    avg_time_ms: Optional[float] = Field(default=None, alias="avgTimeMs")

    model_config = ConfigDict(populate_by_name=True)


class ActiveHeatModel(BaseModel):
    heat_id: Optional[str] = Field(default=None, alias="heatId")
    event_id: Optional[str] = Field(default=None, alias="eventId")
    running: bool
    elapsed_ms: int = Field(alias="elapsedMs")

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def service() -> RaceService:
    return RaceService()


def _raise_http(exc: Exception) -> None:
    if isinstance(exc, HeatConflictError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, ValueError):
        status = 404 if str(exc).endswith("not found") else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    if isinstance(exc, RuntimeError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise exc


def _event_model(record: Dict[str, Any]) -> EventResponseModel:
    return EventResponseModel(
        id=record["id"],
        name=record["name"],
        laneCount=record["lane_count"],
        status=record["status"],
        createdAt=record["created_at"],
    )


def _racer_model(record: Dict[str, Any]) -> RacerResponseModel:
    return RacerResponseModel(
        id=record["id"],
        carNumber=record["car_number"],
        name=record.get("name", ""),
        inspected=bool(record.get("inspected")),
    )


def _heat_model(record: Dict[str, Any], event_id: Optional[str] = None) -> HeatResponseModel:
    return HeatResponseModel(
        id=record["id"],
        eventId=record.get("event_id", event_id),
        round=record["round"],
        heatNumber=record["heat_number"],
        status=record["status"],
        lanes=[HeatLaneModel(laneNumber=lane["lane_number"], racerId=lane["racer_id"]) for lane in record["lanes"]],
        startedAt=record.get("started_at"),
        completedAt=record.get("completed_at"),
    )


def _result_model(record: Dict[str, Any]) -> LaneResultModel:
    return LaneResultModel(
        id=record["id"],
        heatId=record["heat_id"],
        laneNumber=record["lane_number"],
        racerId=record["racer_id"],
        place=record["place"],
        timeMs=record.get("time_ms"),
        dnf=bool(record.get("dnf")),
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/events", response_model=EventListResponse)
def list_events(svc: RaceService = Depends(service)):
    return EventListResponse(events=[_event_model(event) for event in svc.store.fetch_events()])


@app.post("/events", response_model=EventResponseModel, status_code=201)
def create_event(payload: EventCreatePayload, svc: RaceService = Depends(service)):
    try:
        record = svc.store.create_event(payload.model_dump(by_alias=True, exclude_unset=True))
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return _event_model(record)


@app.get("/events/{event_id}", response_model=EventResponseModel)
def get_event(event_id: str, svc: RaceService = Depends(service)):
    try:
        return _event_model(svc.store.fetch_event(event_id))
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/events/{event_id}")
def delete_event(event_id: str, svc: RaceService = Depends(service)):
    try:
        svc.delete_event(event_id)
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return {"success": True}


@app.get("/events/{event_id}/racers", response_model=List[RacerResponseModel])
def list_racers(event_id: str, svc: RaceService = Depends(service)):
    try:
        return [_racer_model(racer) for racer in svc.store.fetch_racers(event_id)]
    except ValueError as exc:
        _raise_http(exc)


@app.post("/events/{event_id}/racers", response_model=RacerResponseModel, status_code=201)
def register_racer(event_id: str, payload: RacerCreatePayload, svc: RaceService = Depends(service)):
    try:
        record = svc.store.register_racer(event_id, payload.model_dump(by_alias=True))
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return _racer_model(record)


@app.post("/racers/{racer_id}/inspect", response_model=RacerResponseModel)
def inspect_racer(racer_id: str, payload: InspectPayload, svc: RaceService = Depends(service)):
    try:
        record = svc.store.inspect_racer(payload.event_id, racer_id, payload.weight_ok)
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return _racer_model(record)


@app.get("/events/{event_id}/heats", response_model=List[HeatResponseModel])
def list_heats(event_id: str, svc: RaceService = Depends(service)):
    try:
        return [_heat_model(heat, event_id) for heat in svc.store.fetch_heats(event_id)]
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/events/{event_id}/heats")
def delete_heats(event_id: str, svc: RaceService = Depends(service)):
    try:
        svc.reset_heats(event_id)
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return {"success": True}


@app.post("/events/{event_id}/generate-heats", response_model=List[HeatResponseModel])
def generate_heats(event_id: str, payload: GenerateHeatsPayload, svc: RaceService = Depends(service)):
    try:
        heats = svc.generate_heats(
            event_id,
            lane_count=payload.lane_count,
            rounds=payload.rounds,
            lookahead=payload.lookahead,
        )
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return [_heat_model(heat, event_id) for heat in heats]


@app.post("/heats/{heat_id}/start", response_model=HeatResponseModel)
def start_heat(heat_id: str, svc: RaceService = Depends(service)):
    try:
        return _heat_model(svc.start_heat(heat_id))
    except (HeatConflictError, ValueError, RuntimeError) as exc:
        _raise_http(exc)


@app.post("/heats/{heat_id}/complete", response_model=HeatResponseModel)
def complete_heat(heat_id: str, svc: RaceService = Depends(service)):
    try:
        return _heat_model(svc.complete_heat(heat_id))
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)


@app.get("/heats/{heat_id}/results", response_model=List[LaneResultModel])
def heat_results(heat_id: str, svc: RaceService = Depends(service)):
    try:
        event_id = svc.store.find_heat(heat_id)["event_id"]
        return [_result_model(row) for row in svc.store.fetch_results(event_id, heat_id)]
    except ValueError as exc:
        _raise_http(exc)


@app.post("/heats/{heat_id}/results", response_model=List[LaneResultModel])
def record_results(heat_id: str, payload: ResultsPayload, svc: RaceService = Depends(service)):
    try:
        rows = [item.model_dump() for item in payload.results]
        saved = svc.record_results(heat_id, rows)
    except (ValueError, RuntimeError) as exc:
        _raise_http(exc)
    return [_result_model(row) for row in saved]


@app.get("/events/{event_id}/standings", response_model=List[StandingModel])
def standings(event_id: str, svc: RaceService = Depends(service)):
    try:
        rows = svc.standings(event_id)
    except ValueError as exc:
        _raise_http(exc)
    return [
        StandingModel(
            racerId=row["racer_id"],
            carNumber=row["car_number"],
            name=row["name"],
            wins=row["wins"],
            losses=row["losses"],
            heatsRun=row["heats_run"],
            avgTimeMs=row["avg_time_ms"],
        )
        for row in rows
    ]


@app.get("/events/{event_id}/elimination-plan")
def elimination_plan(event_id: str, svc: RaceService = Depends(service)) -> dict[str, List[int]]:
    try:
        return {"fieldSizes": svc.elimination_plan(event_id)}
    except ValueError as exc:
        _raise_http(exc)


def _active_model(active) -> ActiveHeatModel:
    return ActiveHeatModel(
        heatId=active.heat_id,
        eventId=active.event_id,
        running=active.running,
        elapsedMs=active.elapsed_ms,
    )


@app.get("/active-heat", response_model=ActiveHeatModel)
def active_heat(svc: RaceService = Depends(service)):
    return _active_model(svc.active_heat())


@app.post("/active-heat/stop", response_model=ActiveHeatModel)
def stop_active_heat(svc: RaceService = Depends(service)):
    try:
        active = svc.stop_active_heat()
    except RuntimeError as exc:
        _raise_http(exc)
    if active.heat_id:
        logger.info("Stopped heat %s after %sms", active.heat_id, active.elapsed_ms)
    return _active_model(active)
