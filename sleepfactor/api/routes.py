"""
FastAPI API routes for the SleepFactor decay service.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from dateutil.parser import isoparse
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from sleepfactor.config import (
    API_KEY,
    DEFAULT_THRESHOLD_PERCENT,
    DRINK_PRESETS,
    PATTERN_END_HOUR,
    PATTERN_INTERVAL_MINUTES,
    PATTERN_START_HOUR,
    TIMELINE_INTERVAL_MINUTES,
    TIMEZONE,
)
from sleepfactor.core.database import (
    count_consumption_events,
    delete_consumption_event,
    get_habit,
    get_reference_time,
    insert_consumption_event,
    insert_habit,
    list_habits,
    query_consumption_events,
    query_drug_levels,
    set_reference_time,
    update_habit_decay,
    upsert_drug_level,
)
from sleepfactor.core.decay_engine import (
    average_daily_pattern,
    estimate,
    format_level,
    generate_level_timeline,
    get_zone,
    is_projected,
    level_color,
    lookback_days,
    lookback_window,
    parse_events,
    resolve_reference_instant,
    typical_dose,
)
from sleepfactor.core.models import HabitDecayProfile, InvalidConfiguration

log = logging.getLogger("sleepfactor.api")

router = APIRouter(prefix="/api")


# --- Auth ---

def verify_api_key(x_api_key: str = Header(default="")):
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


# --- Models ---

class HabitRequest(BaseModel):
    name: str = Field(..., min_length=1)
    unit: str = ""
    half_life_hours: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    threshold_percent: float = Field(DEFAULT_THRESHOLD_PERCENT, gt=0, le=100)


class DecayUpdateRequest(BaseModel):
    half_life_hours: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    threshold_percent: Optional[float] = Field(None, gt=0, le=100)


class ConsumptionEventRequest(BaseModel):
    amount: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    preset: Optional[str] = None
    consumed_at: Optional[str] = None


class ReferenceTimeRequest(BaseModel):
    reference_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}(:\d{2})?$")


# --- Helpers ---

def _parse_instant(value: str, field: str) -> datetime:
    try:
        moment = isoparse(value)
    except (ValueError, OverflowError):
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=get_zone(TIMEZONE))
    return moment


def _get_habit_or_404(habit_id: int) -> dict:
    habit = get_habit(habit_id)
    if habit is None:
        raise HTTPException(status_code=404, detail=f"Habit {habit_id} not found")
    return habit


def _profile_for(habit: dict) -> HabitDecayProfile:
    """Decay settings are read per request; an edit applies to the next call."""
    try:
        return HabitDecayProfile.from_habit(habit)
    except InvalidConfiguration as e:
        raise HTTPException(
            status_code=422,
            detail=f"Habit {habit['id']} ({habit['name']}) is misconfigured: {e}",
        )


def _compute_reference_level(habit: dict, day: date) -> dict:
    """
    Bedtime level for the night of `day`:
    resolve instant -> size lookback -> fetch events -> estimate.

    `logged` covers local day D and, for after-midnight bedtimes, runs on
    until the reference instant.
    """
    profile = _profile_for(habit)
    zone = get_zone(TIMEZONE)
    reference = resolve_reference_instant(day, get_reference_time(), tz=zone)
    start, end = lookback_window(reference, profile)
    rows = query_consumption_events(habit["id"], start, end)
    result = estimate(rows, reference, profile, tz=zone)

    day_start = datetime.combine(day, time(0), tzinfo=zone)
    day_end = max(day_start + timedelta(days=1) - timedelta(microseconds=1), reference)
    logged = count_consumption_events(habit["id"], day_start, day_end) > 0

    dose = typical_dose(result.included_events)
    response = result.to_dict()
    response.update({
        "habit_id": habit["id"],
        "habit_name": habit["name"],
        "date": day.isoformat(),
        "formatted": format_level(result.level, result.unit),
        "color": level_color(result.level, dose),
        "typical_dose": dose,
        "projected": is_projected(reference),
        "logged": logged,
        "lookback_days": lookback_days(profile.half_life_hours, profile.threshold_percent),
    })
    return response


# --- Endpoints ---

@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/habits", dependencies=[Depends(verify_api_key)])
def create_habit(req: HabitRequest):
    """Create a tracked substance habit. Half-life may be filled in later."""
    habit_id = insert_habit(req.name, req.unit, req.half_life_hours, req.threshold_percent)
    log.info("Created habit %d (%s, t1/2=%s h)", habit_id, req.name, req.half_life_hours)
    return get_habit(habit_id)


@router.get("/habits", dependencies=[Depends(verify_api_key)])
def get_habits():
    return list_habits()


@router.get("/habits/{habit_id}", dependencies=[Depends(verify_api_key)])
def get_habit_detail(habit_id: int):
    return _get_habit_or_404(habit_id)


@router.patch("/habits/{habit_id}/decay", dependencies=[Depends(verify_api_key)])
def update_decay(habit_id: int, req: DecayUpdateRequest):
    """Change half-life / threshold. Takes effect on the next estimation."""
    _get_habit_or_404(habit_id)
    update_habit_decay(habit_id, req.half_life_hours, req.threshold_percent)
    return get_habit(habit_id)


@router.post("/habits/{habit_id}/events", dependencies=[Depends(verify_api_key)])
def log_consumption(habit_id: int, req: ConsumptionEventRequest):
    """Log an intake. amount=0 (or preset "none") is an explicit "none consumed"."""
    habit = _get_habit_or_404(habit_id)

    amount = req.amount
    if req.preset is not None:
        preset = DRINK_PRESETS.get(req.preset)
        if preset is None:
            raise HTTPException(status_code=422, detail=f"Unknown preset {req.preset!r}")
        # "none" carries no unit and fits every habit
        if preset["unit"] and preset["unit"] != habit["unit"]:
            raise HTTPException(
                status_code=422,
                detail=f"Preset {req.preset!r} is measured in {preset['unit']!r}, "
                       f"habit {habit_id} in {habit['unit']!r}",
            )
        if amount is None:
            amount = preset["amount"]
    if amount is None:
        raise HTTPException(status_code=422, detail="Either amount or preset is required")

    consumed_at = _parse_instant(req.consumed_at, "consumed_at") if req.consumed_at else None
    row_id = insert_consumption_event(habit_id, amount, consumed_at, req.preset)
    return {"id": row_id, "habit_id": habit_id, "amount": amount,
            "drink_type": req.preset, "status": "ok"}


@router.get("/habits/{habit_id}/events", dependencies=[Depends(verify_api_key)])
def get_consumption_events(
    habit_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
):
    """Query events. Default: last 7 days."""
    _get_habit_or_404(habit_id)
    end_dt = _parse_instant(end, "end") if end else datetime.now(get_zone(TIMEZONE))
    start_dt = _parse_instant(start, "start") if start else end_dt - timedelta(days=7)
    return query_consumption_events(habit_id, start_dt, end_dt)


@router.delete("/events/{event_id}", dependencies=[Depends(verify_api_key)])
def remove_consumption_event(event_id: int):
    if not delete_consumption_event(event_id):
        raise HTTPException(status_code=404, detail=f"Event {event_id} not found")
    return {"status": "deleted", "id": event_id}


@router.get("/settings/reference-time", dependencies=[Depends(verify_api_key)])
def get_reference_time_setting():
    stored = get_reference_time()
    return {"reference_time": stored, "is_default": stored is None}


@router.put("/settings/reference-time", dependencies=[Depends(verify_api_key)])
def put_reference_time_setting(req: ReferenceTimeRequest):
    set_reference_time(req.reference_time)
    return {"reference_time": req.reference_time, "status": "ok"}


@router.get("/habits/{habit_id}/level", dependencies=[Depends(verify_api_key)])
def get_reference_level(habit_id: int, day: Optional[date] = Query(default=None, alias="date")):
    """Estimated level at the habitual bedtime of a logged day (default today)."""
    habit = _get_habit_or_404(habit_id)
    if day is None:
        day = datetime.now(get_zone(TIMEZONE)).date()
    return _compute_reference_level(habit, day)


@router.get("/habits/{habit_id}/level/now", dependencies=[Depends(verify_api_key)])
def get_current_level(habit_id: int):
    habit = _get_habit_or_404(habit_id)
    profile = _profile_for(habit)
    zone = get_zone(TIMEZONE)
    now = datetime.now(zone)
    start, end = lookback_window(now, profile)
    result = estimate(query_consumption_events(habit_id, start, end), now, profile, tz=zone)
    response = result.to_dict()
    response["formatted"] = format_level(result.level, result.unit)
    return response


@router.get("/habits/{habit_id}/timeline", dependencies=[Depends(verify_api_key)])
def get_level_timeline(
    habit_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
    interval: int = Query(default=TIMELINE_INTERVAL_MINUTES, ge=1, le=1440),
):
    """Level curve between start and end (default: today, local midnight to midnight)."""
    habit = _get_habit_or_404(habit_id)
    profile = _profile_for(habit)
    zone = get_zone(TIMEZONE)

    if start:
        start_dt = _parse_instant(start, "start")
    else:
        start_dt = datetime.combine(datetime.now(zone).date(), time(0), tzinfo=zone)
    end_dt = _parse_instant(end, "end") if end else start_dt + timedelta(days=1)
    if end_dt < start_dt:
        raise HTTPException(status_code=400, detail="end must not be before start")
    if end_dt - start_dt > timedelta(days=31):
        raise HTTPException(status_code=400, detail="timeline range is limited to 31 days")

    history_start, _ = lookback_window(start_dt, profile)
    rows = query_consumption_events(habit_id, history_start, end_dt)
    events, rejected = parse_events(rows, zone, habit_id=profile.habit_id)
    points = generate_level_timeline(events, start_dt, end_dt, profile.half_life_hours, interval)
    return {
        "habit_id": habit_id,
        "unit": profile.unit,
        "interval_minutes": interval,
        "points": [{"time": p["time"].isoformat(), "level": p["level"]} for p in points],
        "rejected_events": [r.to_dict() for r in rejected],
    }


@router.get("/habits/{habit_id}/pattern", dependencies=[Depends(verify_api_key)])
def get_daily_pattern(
    habit_id: int,
    days: int = Query(default=7, ge=1, le=90),
    start_hour: float = Query(default=PATTERN_START_HOUR, ge=0, le=24),
    end_hour: float = Query(default=PATTERN_END_HOUR, ge=0, le=48),
    interval: int = Query(default=PATTERN_INTERVAL_MINUTES, ge=5, le=720),
):
    """Average level by hour of day over the last `days` days (today included)."""
    habit = _get_habit_or_404(habit_id)
    profile = _profile_for(habit)
    if end_hour < start_hour:
        raise HTTPException(status_code=400, detail="end_hour must not be before start_hour")
    zone = get_zone(TIMEZONE)

    today = datetime.now(zone).date()
    day_list = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    first = datetime.combine(day_list[0], time(0), tzinfo=zone) + timedelta(hours=start_hour)
    last = datetime.combine(today, time(0), tzinfo=zone) + timedelta(hours=end_hour)

    history_start, _ = lookback_window(first, profile)
    rows = query_consumption_events(habit_id, history_start, last)
    events, _ = parse_events(rows, zone, habit_id=profile.habit_id)
    pattern = average_daily_pattern(
        events, day_list, profile.half_life_hours, zone, start_hour, end_hour, interval,
    )
    return {"habit_id": habit_id, "unit": profile.unit, "days": days, "pattern": pattern}


@router.post("/habits/{habit_id}/levels/{day}", dependencies=[Depends(verify_api_key)])
def store_reference_level(habit_id: int, day: date):
    """Compute the bedtime level for `day` and hand it to the correlation store."""
    habit = _get_habit_or_404(habit_id)
    result = _compute_reference_level(habit, day)
    upsert_drug_level(
        habit_id, day.isoformat(), result["level"], result["unit"],
        _parse_instant(result["reference_instant"], "reference_instant"),
    )
    log.info("Stored %s level for %s: %s", habit["name"], day, result["formatted"])
    return result


@router.get("/levels", dependencies=[Depends(verify_api_key)])
def get_stored_levels(
    start: date,
    end: date,
    habit_id: Optional[int] = None,
):
    """Stored bedtime levels for the correlation collaborator."""
    return query_drug_levels(start.isoformat(), end.isoformat(), habit_id)
