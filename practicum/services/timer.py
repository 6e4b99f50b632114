"""Active-time accounting for sessions.

Pure functions over a session dict; nothing here touches the database.
`total_active_time_seconds` only holds time folded in at pause/complete,
so the live figure adds whatever has elapsed since the last resume.
"""

import math
from datetime import datetime, timezone

from practicum.config import settings


def parse_ts(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def elapsed_seconds(start, end) -> int:
    """Whole seconds between two timestamps, never negative."""
    delta = (parse_ts(end) - parse_ts(start)).total_seconds()
    return max(0, math.floor(delta))


def last_resume_at(session: dict):
    """When the current ACTIVE stretch began: last resume, else the start."""
    history = session.get("pause_history") or []
    if history and history[-1].get("resumed_at"):
        return history[-1]["resumed_at"]
    return session["started_at"]


def in_flight_seconds(session: dict, now) -> int:
    if session["status"] != "active":
        return 0
    return elapsed_seconds(last_resume_at(session), now)


def current_active_seconds(session: dict, now) -> int:
    return (session.get("total_active_time_seconds") or 0) + in_flight_seconds(session, now)


def open_pause(session: dict, now: str) -> tuple[list, int]:
    """Return (new pause_history, new total) for pausing at `now`."""
    total = current_active_seconds(session, now)
    history = list(session.get("pause_history") or [])
    history.append({"paused_at": now, "resumed_at": None, "duration_seconds": 0})
    return history, total


def close_pause(session: dict, now: str) -> list:
    """Return the pause_history with its latest entry closed at `now`."""
    history = [dict(entry) for entry in (session.get("pause_history") or [])]
    if history and history[-1].get("resumed_at") is None:
        last = history[-1]
        last["resumed_at"] = now
        last["duration_seconds"] = elapsed_seconds(last["paused_at"], now)
    return history


def compute_timer(session: dict, session_config: dict | None, now) -> dict:
    """Timer snapshot for a session; does not mutate anything."""
    config = session_config or {}
    warning_minutes = config.get("warning_before_timeout_minutes")
    if warning_minutes is None:
        warning_minutes = settings.default_warning_before_timeout_minutes

    current = current_active_seconds(session, now)
    max_minutes = session.get("max_duration_minutes")
    remaining = None
    if max_minutes:
        remaining = max(0, max_minutes * 60 - current)

    return {
        "session_id": session["id"],
        "status": session["status"],
        "started_at": session["started_at"],
        "paused_at": session.get("paused_at"),
        "pause_count": len(session.get("pause_history") or []),
        "total_active_time_seconds": current,
        "max_duration_minutes": max_minutes,
        "remaining_seconds": remaining,
        "is_near_timeout": remaining is not None and remaining <= warning_minutes * 60,
        "is_timed_out": remaining is not None and remaining == 0,
    }
