"""
Decay engine entities and error taxonomy.

  ConsumptionEvent   -- one immutable intake (amount 0 = explicit "none consumed")
  HabitDecayProfile  -- per-habit half-life, negligible threshold, unit
  EstimationResult   -- level at a reference instant + audit trail

Errors:
  InvalidConfiguration -- missing / non-positive half-life, bad threshold
  InvalidEvent         -- negative amount, unparsable timestamp, wrong habit
"""

import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil.parser import isoparse

from sleepfactor.config import DEFAULT_THRESHOLD_PERCENT


class DecayEngineError(Exception):
    """Base class for decay engine failures."""


class InvalidConfiguration(DecayEngineError):
    pass


class InvalidEvent(DecayEngineError):
    def __init__(self, reason: str, record: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.record = record


def validate_half_life(half_life_hours) -> float:
    """Return the half-life as float or raise InvalidConfiguration. Never defaults."""
    if half_life_hours is None:
        raise InvalidConfiguration("half_life_hours is not configured")
    if isinstance(half_life_hours, bool):
        raise InvalidConfiguration(f"half_life_hours must be a number, got {half_life_hours!r}")
    try:
        value = float(half_life_hours)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"half_life_hours must be a number, got {half_life_hours!r}")
    if not math.isfinite(value) or value <= 0:
        raise InvalidConfiguration(f"half_life_hours must be > 0, got {half_life_hours!r}")
    return value


def _parse_amount(raw) -> float:
    if raw is None or isinstance(raw, bool):
        raise InvalidEvent(f"amount must be a number, got {raw!r}")
    try:
        value = float(Decimal(str(raw).strip()))
    except (InvalidOperation, ValueError):
        raise InvalidEvent(f"amount must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise InvalidEvent(f"amount must be finite, got {raw!r}")
    if value < 0:
        raise InvalidEvent(f"amount must be >= 0, got {raw!r}")
    return value


def _parse_timestamp(raw, tz: Optional[tzinfo] = None) -> datetime:
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            ts = isoparse(raw.strip())
        except (ValueError, OverflowError):
            raise InvalidEvent(f"consumed_at is not ISO-8601: {raw!r}")
    else:
        raise InvalidEvent(f"consumed_at missing or invalid: {raw!r}")
    if ts.tzinfo is None:
        if tz is None:
            raise InvalidEvent(f"consumed_at has no timezone: {raw!r}")
        ts = ts.replace(tzinfo=tz)
    return ts


@dataclass(frozen=True)
class ConsumptionEvent:
    habit_id: str
    consumed_at: datetime
    amount: float
    event_id: Optional[str] = None
    drink_type: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.consumed_at, datetime):
            raise InvalidEvent(f"consumed_at must be a datetime, got {self.consumed_at!r}", self)
        if self.consumed_at.tzinfo is None or self.consumed_at.utcoffset() is None:
            raise InvalidEvent("consumed_at must be timezone-aware", self)
        if isinstance(self.amount, bool) or not isinstance(self.amount, (int, float)):
            raise InvalidEvent(f"amount must be a number, got {self.amount!r}", self)
        if not math.isfinite(self.amount) or self.amount < 0:
            raise InvalidEvent(f"amount must be finite and >= 0, got {self.amount!r}", self)

    @property
    def is_none_consumed(self) -> bool:
        """Explicit zero log. Says nothing about whether other logs exist."""
        return self.amount == 0

    @classmethod
    def from_record(cls, record: dict, tz: Optional[tzinfo] = None) -> "ConsumptionEvent":
        """
        Build an event from a persistence row.
        Naive timestamps are read in `tz`; without `tz` they are rejected.
        """
        if not isinstance(record, dict):
            raise InvalidEvent(f"event record must be a mapping, got {type(record).__name__}", record)
        try:
            consumed_at = _parse_timestamp(record.get("consumed_at"), tz)
            amount = _parse_amount(record.get("amount"))
        except InvalidEvent as e:
            raise InvalidEvent(e.reason, record) from None
        habit_id = record.get("habit_id")
        event_id = record.get("id")
        return cls(
            habit_id=str(habit_id) if habit_id is not None else "",
            consumed_at=consumed_at,
            amount=amount,
            event_id=str(event_id) if event_id is not None else None,
            drink_type=record.get("drink_type"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.event_id,
            "habit_id": self.habit_id,
            "consumed_at": self.consumed_at.isoformat(),
            "amount": self.amount,
            "drink_type": self.drink_type,
        }


@dataclass(frozen=True)
class HabitDecayProfile:
    half_life_hours: float
    threshold_percent: float = DEFAULT_THRESHOLD_PERCENT
    habit_id: Optional[str] = None
    unit: str = ""

    def __post_init__(self):
        object.__setattr__(self, "half_life_hours", validate_half_life(self.half_life_hours))
        try:
            threshold = float(self.threshold_percent)
        except (TypeError, ValueError):
            raise InvalidConfiguration(f"threshold_percent must be a number, got {self.threshold_percent!r}")
        if not (0 < threshold <= 100):
            raise InvalidConfiguration(f"threshold_percent must be in (0, 100], got {self.threshold_percent!r}")
        object.__setattr__(self, "threshold_percent", threshold)

    @property
    def negligible_after_hours(self) -> float:
        """Hours until one dose drops below threshold_percent of itself."""
        return self.half_life_hours * math.log2(100.0 / self.threshold_percent)

    @classmethod
    def from_habit(cls, habit: dict) -> "HabitDecayProfile":
        """Read the decay settings off a stored habit row."""
        threshold = habit.get("drug_threshold_percent")
        habit_id = habit.get("id")
        return cls(
            half_life_hours=habit.get("half_life_hours"),
            threshold_percent=DEFAULT_THRESHOLD_PERCENT if threshold is None else threshold,
            habit_id=str(habit_id) if habit_id is not None else None,
            unit=habit.get("unit") or "",
        )


@dataclass(frozen=True)
class RejectedEvent:
    record: Any
    reason: str

    def to_dict(self) -> dict:
        record = self.record
        if isinstance(record, ConsumptionEvent):
            record = record.to_dict()
        elif not isinstance(record, dict):
            record = repr(record)
        return {"record": record, "reason": self.reason}


@dataclass(frozen=True)
class EstimationResult:
    level: float
    reference_instant: datetime
    half_life_hours: float
    included_events: tuple = ()
    rejected_events: tuple = ()
    unit: str = ""

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "unit": self.unit,
            "reference_instant": self.reference_instant.isoformat(),
            "half_life_hours": self.half_life_hours,
            "included_events": [e.to_dict() for e in self.included_events],
            "rejected_events": [r.to_dict() for r in self.rejected_events],
        }
