"""
SQLite database setup and access layer.
Schema: habits, consumption_events, user_settings, drug_levels.

Timestamps are stored as UTC ISO-8601 with microseconds so that
BETWEEN range queries compare correctly as strings.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sleepfactor.config import DB_PATH, DEFAULT_THRESHOLD_PERCENT, USER_ID

log = logging.getLogger("sleepfactor.db")

_local = threading.local()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS habits (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 TEXT    NOT NULL,
    name                    TEXT    NOT NULL,
    unit                    TEXT    NOT NULL DEFAULT '',
    half_life_hours         REAL,
    drug_threshold_percent  REAL    DEFAULT 5,
    created_at              TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS consumption_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT    NOT NULL,
    habit_id    INTEGER NOT NULL REFERENCES habits(id) ON DELETE CASCADE,
    consumed_at TEXT    NOT NULL,
    amount      REAL    NOT NULL CHECK(amount >= 0),
    drink_type  TEXT,
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_consumption_user_habit_ts
    ON consumption_events(user_id, habit_id, consumed_at);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id         TEXT    PRIMARY KEY,
    reference_time  TEXT
);

CREATE TABLE IF NOT EXISTS drug_levels (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT    NOT NULL,
    habit_id        INTEGER NOT NULL REFERENCES habits(id) ON DELETE CASCADE,
    date            TEXT    NOT NULL,
    level_value     REAL    NOT NULL,
    unit            TEXT    NOT NULL,
    reference_instant TEXT  NOT NULL,
    calculated_at   TEXT    NOT NULL,
    UNIQUE(user_id, habit_id, date)
);

CREATE INDEX IF NOT EXISTS idx_drug_levels_date ON drug_levels(user_id, date);
"""


def to_db_timestamp(moment: datetime) -> str:
    """Aware datetime -> canonical UTC string. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return to_db_timestamp(datetime.now(timezone.utc))


def get_connection() -> sqlite3.Connection:
    """Thread-local SQLite connection with WAL mode. Reopened if DB_PATH changes."""
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "path", None) != DB_PATH:
        if conn is not None:
            conn.close()
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        _local.conn = conn
        _local.path = DB_PATH
    return conn


def close_connection():
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
    _local.conn = None
    _local.path = None


@contextmanager
def db_cursor():
    """Yield a cursor, auto-commit on success, rollback on error."""
    conn = get_connection()
    cur = conn.cursor()
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db():
    """Create tables if they don't exist."""
    with db_cursor() as cur:
        cur.executescript(SCHEMA_SQL)
    log.info("Database initialized at %s", DB_PATH)


# --- Habits ---

def insert_habit(name: str, unit: str = "", half_life_hours: Optional[float] = None,
                 threshold_percent: float = DEFAULT_THRESHOLD_PERCENT,
                 user_id: str = USER_ID) -> int:
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO habits
               (user_id, name, unit, half_life_hours, drug_threshold_percent, created_at)
               VALUES (?,?,?,?,?,?)""",
            (user_id, name, unit, half_life_hours, threshold_percent, _now()),
        )
        return cur.lastrowid


def get_habit(habit_id: int, user_id: str = USER_ID) -> Optional[dict]:
    with db_cursor() as cur:
        cur.execute("SELECT * FROM habits WHERE id=? AND user_id=?", (habit_id, user_id))
        row = cur.fetchone()
        return dict(row) if row else None


def list_habits(user_id: str = USER_ID) -> list[dict]:
    with db_cursor() as cur:
        cur.execute("SELECT * FROM habits WHERE user_id=? ORDER BY id", (user_id,))
        return [dict(r) for r in cur.fetchall()]


def update_habit_decay(habit_id: int, half_life_hours: Optional[float] = None,
                       threshold_percent: Optional[float] = None,
                       user_id: str = USER_ID) -> bool:
    """Update only the settings that are given."""
    updates = []
    params: list = []
    if half_life_hours is not None:
        updates.append("half_life_hours=?")
        params.append(half_life_hours)
    if threshold_percent is not None:
        updates.append("drug_threshold_percent=?")
        params.append(threshold_percent)
    if not updates:
        return get_habit(habit_id, user_id) is not None
    with db_cursor() as cur:
        cur.execute(
            f"UPDATE habits SET {', '.join(updates)} WHERE id=? AND user_id=?",
            (*params, habit_id, user_id),
        )
        return cur.rowcount > 0


# --- Consumption events ---
# No update helper: a correction is delete + re-create.

def insert_consumption_event(habit_id: int, amount: float,
                             consumed_at: Optional[datetime] = None,
                             drink_type: Optional[str] = None,
                             user_id: str = USER_ID) -> int:
    ts = to_db_timestamp(consumed_at or datetime.now(timezone.utc))
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO consumption_events
               (user_id, habit_id, consumed_at, amount, drink_type, created_at)
               VALUES (?,?,?,?,?,?)""",
            (user_id, habit_id, ts, amount, drink_type, _now()),
        )
        return cur.lastrowid


def query_consumption_events(habit_id: int, start: datetime, end: datetime,
                             user_id: str = USER_ID) -> list[dict]:
    with db_cursor() as cur:
        cur.execute(
            """SELECT * FROM consumption_events
               WHERE user_id=? AND habit_id=? AND consumed_at BETWEEN ? AND ?
               ORDER BY consumed_at""",
            (user_id, habit_id, to_db_timestamp(start), to_db_timestamp(end)),
        )
        return [dict(r) for r in cur.fetchall()]


def count_consumption_events(habit_id: int, start: datetime, end: datetime,
                             user_id: str = USER_ID) -> int:
    with db_cursor() as cur:
        cur.execute(
            """SELECT COUNT(*) FROM consumption_events
               WHERE user_id=? AND habit_id=? AND consumed_at BETWEEN ? AND ?""",
            (user_id, habit_id, to_db_timestamp(start), to_db_timestamp(end)),
        )
        return cur.fetchone()[0]


def delete_consumption_event(event_id: int, user_id: str = USER_ID) -> bool:
    with db_cursor() as cur:
        cur.execute(
            "DELETE FROM consumption_events WHERE id=? AND user_id=?",
            (event_id, user_id),
        )
        return cur.rowcount > 0


# --- User settings ---

def get_reference_time(user_id: str = USER_ID) -> Optional[str]:
    with db_cursor() as cur:
        cur.execute("SELECT reference_time FROM user_settings WHERE user_id=?", (user_id,))
        row = cur.fetchone()
        return row["reference_time"] if row else None


def set_reference_time(reference_time: Optional[str], user_id: str = USER_ID):
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO user_settings (user_id, reference_time) VALUES (?,?)
               ON CONFLICT(user_id) DO UPDATE SET reference_time=excluded.reference_time""",
            (user_id, reference_time),
        )


# --- Drug levels (outbound to correlation) ---

def upsert_drug_level(habit_id: int, date: str, level_value: float, unit: str,
                      reference_instant: datetime, user_id: str = USER_ID) -> int:
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO drug_levels
                   (user_id, habit_id, date, level_value, unit, reference_instant, calculated_at)
               VALUES (?,?,?,?,?,?,?)
               ON CONFLICT(user_id, habit_id, date) DO UPDATE SET
                   level_value=excluded.level_value, unit=excluded.unit,
                   reference_instant=excluded.reference_instant,
                   calculated_at=excluded.calculated_at""",
            (user_id, habit_id, date, level_value, unit,
             to_db_timestamp(reference_instant), _now()),
        )
        return cur.lastrowid


def query_drug_levels(start_date: str, end_date: str,
                      habit_id: Optional[int] = None,
                      user_id: str = USER_ID) -> list[dict]:
    sql = """SELECT dl.*, h.name AS habit_name FROM drug_levels dl
             JOIN habits h ON h.id = dl.habit_id
             WHERE dl.user_id=? AND dl.date BETWEEN ? AND ?"""
    params: list = [user_id, start_date, end_date]
    if habit_id is not None:
        sql += " AND dl.habit_id=?"
        params.append(habit_id)
    sql += " ORDER BY dl.date, dl.habit_id"
    with db_cursor() as cur:
        cur.execute(sql, params)
        return [dict(r) for r in cur.fetchall()]
