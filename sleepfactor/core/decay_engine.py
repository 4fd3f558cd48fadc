"""
Decay Engine: first-order elimination model for tracked substances.

Every consumption event decays independently with the habit's half-life:
  f(t)     = 2^(-t / t_half)                      -- remaining fraction after t hours
  L(T_ref) = SUM_i a_i * f(T_ref - tau_i) * H(T_ref - tau_i)

H is the Heaviside step: events after the reference instant contribute nothing
(an event exactly at T_ref contributes its full amount). Contributions are
never cut off by the negligible threshold; the threshold only widens the
lookback window used to query history:
  lookback_days = max(3, ceil(max(3 * t_half, t_half * log2(100 / p)) / 24))

Reference instant for a logged day D: the habitual bedtime on the night of D
(D at the clock time, or D + 1 when the clock time falls before the rollover
hour, i.e. after midnight). Anchored to D only, never to the live clock.

Everything here is pure: no I/O, no cached configuration.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Optional, Union
from zoneinfo import ZoneInfo

from sleepfactor.config import (
    DEFAULT_REFERENCE_TIME,
    LEVEL_MODERATE_RATIO,
    LOOKBACK_HALF_LIVES,
    LOOKBACK_MIN_DAYS,
    PATTERN_END_HOUR,
    PATTERN_INTERVAL_MINUTES,
    PATTERN_START_HOUR,
    REFERENCE_ROLLOVER_HOUR,
    TIMELINE_INTERVAL_MINUTES,
    TIMEZONE,
)
from sleepfactor.core.models import (
    ConsumptionEvent,
    EstimationResult,
    HabitDecayProfile,
    InvalidConfiguration,
    InvalidEvent,
    RejectedEvent,
    validate_half_life,
)

log = logging.getLogger("sleepfactor.engine")


def get_zone(tz: Union[tzinfo, str, None] = None) -> tzinfo:
    if tz is None:
        return ZoneInfo(TIMEZONE)
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _as_aware(moment: datetime, zone: tzinfo) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=zone)


def _hours_between(start: datetime, end: datetime) -> float:
    # via UTC: same-tzinfo subtraction in Python ignores DST offset changes
    delta = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return delta.total_seconds() / 3600.0


# ── Decay function ───────────────────────────────────────────────────

def remaining_fraction(elapsed_hours: float, half_life_hours: float) -> float:
    """
    Fraction of a dose left after `elapsed_hours`: 2^(-t / t_half).
    Negative elapsed time is a caller bug; future events are filtered upstream.
    """
    half_life = validate_half_life(half_life_hours)
    if elapsed_hours < 0:
        raise ValueError(f"elapsed_hours must be >= 0, got {elapsed_hours!r}")
    return 2.0 ** (-elapsed_hours / half_life)


# ── Level estimation (Heaviside superposition) ───────────────────────

def estimate_level(
    events: Iterable[ConsumptionEvent],
    reference_instant: datetime,
    half_life_hours: float,
) -> float:
    """
    Sum the remaining amount of every event at or before `reference_instant`.
    No events -> 0.0. fsum keeps the result independent of event order.
    """
    half_life = validate_half_life(half_life_hours)
    if reference_instant.tzinfo is None:
        raise ValueError("reference_instant must be timezone-aware")

    contributions = []
    for event in events:
        hours_since = _hours_between(event.consumed_at, reference_instant)
        if hours_since < 0:  # Heaviside: future events contribute 0
            continue
        contributions.append(event.amount * remaining_fraction(hours_since, half_life))
    return math.fsum(contributions)


def parse_events(
    records: Iterable,
    tz: Union[tzinfo, str, None] = None,
    habit_id: Optional[str] = None,
) -> tuple[list[ConsumptionEvent], list[RejectedEvent]]:
    """
    Turn persistence rows (or ready events) into ConsumptionEvents.
    Bad rows are collected, not raised, so one broken record cannot sink a habit.
    """
    zone = get_zone(tz)
    accepted: list[ConsumptionEvent] = []
    rejected: list[RejectedEvent] = []
    for record in records:
        try:
            if isinstance(record, ConsumptionEvent):
                event = record
            else:
                event = ConsumptionEvent.from_record(record, tz=zone)
            if habit_id is not None and event.habit_id != str(habit_id):
                raise InvalidEvent(
                    f"event belongs to habit {event.habit_id!r}, not {habit_id!r}", record,
                )
        except InvalidEvent as e:
            log.warning("Rejected consumption event %r: %s", record, e.reason)
            rejected.append(RejectedEvent(record=record, reason=e.reason))
            continue
        accepted.append(event)
    return accepted, rejected


def estimate(
    records: Iterable,
    reference_instant: datetime,
    profile: HabitDecayProfile,
    tz: Union[tzinfo, str, None] = None,
) -> EstimationResult:
    """
    Estimate the level for one habit with a full audit trail.

    Invalid rows end up in `rejected_events`; the rest are summed.
    A naive reference instant is read in `tz` (default: configured zone).
    InvalidConfiguration is never caught here.
    """
    zone = get_zone(tz)
    reference = _as_aware(reference_instant, zone)
    accepted, rejected = parse_events(records, zone, habit_id=profile.habit_id)

    included = sorted(
        (e for e in accepted if _hours_between(e.consumed_at, reference) >= 0),
        key=lambda e: e.consumed_at.astimezone(timezone.utc),
    )
    level = estimate_level(included, reference, profile.half_life_hours)

    log.info(
        "Habit %s level at %s: %.3f %s (%d events, %d rejected)",
        profile.habit_id, reference.isoformat(), level, profile.unit,
        len(included), len(rejected),
    )
    return EstimationResult(
        level=level,
        reference_instant=reference,
        half_life_hours=profile.half_life_hours,
        included_events=tuple(included),
        rejected_events=tuple(rejected),
        unit=profile.unit,
    )


def current_level(
    events: Iterable[ConsumptionEvent],
    half_life_hours: float,
    now: Optional[datetime] = None,
) -> float:
    if now is None:
        now = datetime.now(timezone.utc)
    return estimate_level(events, now, half_life_hours)


# ── Lookback window ──────────────────────────────────────────────────

def lookback_days(half_life_hours: float, threshold_percent: Optional[float] = None) -> int:
    """
    Days of history a caller must query before trusting the sum.

    Base policy: at least LOOKBACK_MIN_DAYS, otherwise three half-lives.
    A threshold widens the window to the point where one dose falls below
    threshold_percent of itself; it never narrows it.
    """
    half_life = validate_half_life(half_life_hours)
    hours = LOOKBACK_HALF_LIVES * half_life
    if threshold_percent is not None:
        if not (0 < threshold_percent <= 100):
            raise InvalidConfiguration(
                f"threshold_percent must be in (0, 100], got {threshold_percent!r}"
            )
        hours = max(hours, half_life * math.log2(100.0 / threshold_percent))
    return max(LOOKBACK_MIN_DAYS, math.ceil(hours / 24.0))


def lookback_window(
    reference_instant: datetime,
    profile: HabitDecayProfile,
) -> tuple[datetime, datetime]:
    """Query range [reference - lookback_days, reference] for one habit."""
    days = lookback_days(profile.half_life_hours, profile.threshold_percent)
    return reference_instant - timedelta(days=days), reference_instant


def events_in_range(
    events: Iterable[ConsumptionEvent],
    start: datetime,
    end: datetime,
) -> list[ConsumptionEvent]:
    """Events with start <= consumed_at <= end."""
    return [
        e for e in events
        if _hours_between(start, e.consumed_at) >= 0 and _hours_between(e.consumed_at, end) >= 0
    ]


# ── Reference instant ────────────────────────────────────────────────

def _default_clock_time() -> time:
    try:
        return time.fromisoformat(DEFAULT_REFERENCE_TIME)
    except ValueError:
        return time(22, 0)


def parse_clock_time(value) -> time:
    """
    Habitual clock time from a `time` or "HH:MM[:SS]" string.
    Missing or unparsable values fall back to the default (22:00:00).
    """
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if isinstance(value, str) and value.strip():
        try:
            return time.fromisoformat(value.strip()).replace(tzinfo=None)
        except ValueError:
            pass
    if value is not None:
        log.warning("Unusable reference clock time %r, using %s", value, DEFAULT_REFERENCE_TIME)
    return _default_clock_time()


def resolve_reference_instant(
    logged_date: Union[date, str],
    clock_time=None,
    tz: Union[tzinfo, str, None] = None,
    rollover_hour: Optional[int] = None,
) -> datetime:
    """
    Bedtime instant for the night of `logged_date`.

    The date is the only anchor: a historical day always maps to the same
    instant regardless of when it is asked. Clock times earlier than
    `rollover_hour` (default REFERENCE_ROLLOVER_HOUR) are after-midnight
    bedtimes and land on the following calendar day.
    """
    if isinstance(logged_date, datetime):
        day = logged_date.date()
    elif isinstance(logged_date, date):
        day = logged_date
    else:
        day = date.fromisoformat(str(logged_date))

    clock = parse_clock_time(clock_time)
    if rollover_hour is None:
        rollover_hour = REFERENCE_ROLLOVER_HOUR
    if clock.hour < rollover_hour:
        day += timedelta(days=1)
    return datetime.combine(day, clock, tzinfo=get_zone(tz))


def is_projected(reference_instant: datetime, now: Optional[datetime] = None) -> bool:
    """True while the reference instant is still ahead of `now`."""
    if now is None:
        now = datetime.now(timezone.utc)
    return _hours_between(now, reference_instant) > 0


def logged_on_day(
    events: Iterable[ConsumptionEvent],
    day: date,
    tz: Union[tzinfo, str, None] = None,
) -> bool:
    """Existence check: was anything (zero included) logged on `day`?"""
    zone = get_zone(tz)
    return any(e.consumed_at.astimezone(zone).date() == day for e in events)


# ── Timelines ────────────────────────────────────────────────────────

def generate_level_timeline(
    events: Iterable[ConsumptionEvent],
    start: datetime,
    end: datetime,
    half_life_hours: float,
    interval_minutes: int = TIMELINE_INTERVAL_MINUTES,
) -> list[dict]:
    """
    Level data points from start to end (inclusive) at the given interval.
    """
    if interval_minutes <= 0:
        raise ValueError(f"interval_minutes must be > 0, got {interval_minutes!r}")
    half_life = validate_half_life(half_life_hours)
    events = list(events)

    points = []
    step = timedelta(minutes=interval_minutes)
    t = start
    while t <= end:
        points.append({"time": t, "level": estimate_level(events, t, half_life)})
        t += step
    return points


def average_daily_pattern(
    events: Iterable[ConsumptionEvent],
    days: list[date],
    half_life_hours: float,
    tz: Union[tzinfo, str, None] = None,
    start_hour: float = PATTERN_START_HOUR,
    end_hour: float = PATTERN_END_HOUR,
    interval_minutes: int = PATTERN_INTERVAL_MINUTES,
) -> list[dict]:
    """
    Average level by hour of day across `days`.

    Each day is evaluated against the full event history, so carry-over from
    the previous evening shows up in the morning hours.
    Returns [{hour, level}], hour as float (24.0 = next midnight).
    """
    if not days:
        return []
    zone = get_zone(tz)
    events = list(events)

    timelines = []
    for day in days:
        midnight = datetime.combine(day, time(0), tzinfo=zone)
        timelines.append(generate_level_timeline(
            events,
            midnight + timedelta(hours=start_hour),
            midnight + timedelta(hours=end_hour),
            half_life_hours,
            interval_minutes,
        ))

    n_days = len(timelines)
    pattern = []
    for i in range(len(timelines[0])):
        total = math.fsum(timeline[i]["level"] for timeline in timelines)
        pattern.append({
            "hour": round(start_hour + i * interval_minutes / 60.0, 4),
            "level": total / n_days,
        })
    return pattern


# ── Presentation helpers ─────────────────────────────────────────────

def typical_dose(events: Iterable[ConsumptionEvent]) -> float:
    """Mean logged amount; 0.0 without events."""
    amounts = [e.amount for e in events]
    if not amounts:
        return 0.0
    return math.fsum(amounts) / len(amounts)


def level_color(level: float, max_level: float) -> str:
    """green = nothing left, yellow = up to 30% of max_level, red above."""
    if level <= 0:
        return "green"
    if level <= max_level * LEVEL_MODERATE_RATIO:
        return "yellow"
    return "red"


def format_level(level, unit: str, decimals: int = 1) -> str:
    """e.g. "23.5 mg". Missing or non-numeric levels render as "0"."""
    if level is None or isinstance(level, bool):
        return "0"
    try:
        value = float(level)
    except (TypeError, ValueError):
        return "0"
    if math.isnan(value):
        return "0"
    return f"{value:.{decimals}f} {unit}".strip()
