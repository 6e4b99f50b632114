"""
session_machine.py - Lifecycle of a simulated clinical session

Provides:
- create_session() - start or continue the live session for (student, case, type)
- append_message() - record a transcript entry while ACTIVE
- pause_session() / resume_session() - timer-aware pause handling
- complete_session() - ACTIVE → COMPLETED (assessment is triggered by the caller)
- get_timer() - non-mutating timer snapshot
- session_history() / active_session() - per-case queries

Status flow:
    active ⇄ paused
    active → completed → pending_validation → validated | revised

Every mutation is a compare-and-set on (status, version), so duplicated or
concurrent requests cannot append two pause entries or close one twice.
"""

import logging
from typing import Any, Dict, Optional

from practicum.config import settings
from practicum.db import queries as q
from practicum.db.database import is_unique_violation
from practicum.errors import NotFound, InvalidState, Conflict, ConfigurationError, ValidationFailure
from practicum.services import timer

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_PENDING_VALIDATION = "pending_validation"
STATUS_VALIDATED = "validated"
STATUS_REVISED = "revised"

LIVE_STATUSES = (STATUS_ACTIVE, STATUS_PAUSED)
FINISHED_STATUSES = (STATUS_COMPLETED, STATUS_PENDING_VALIDATION, STATUS_VALIDATED, STATUS_REVISED)

SESSION_TYPES = ("patient_interview", "therapist_consultation", "supervisor_feedback")
MESSAGE_ROLES = ("student", "patient", "therapist", "supervisor")

REQUIRED_SIMULATION_FIELDS = ("patient_profile", "scenario_type", "difficulty_level")

_CAS_ATTEMPTS = 3


def case_session_config(case: Dict[str, Any]) -> Dict[str, Any]:
    """A case's session_config with defaults filled in."""
    config = {
        "session_duration_minutes": settings.default_session_duration_minutes,
        "max_sessions_allowed": None,
        "allow_pause": True,
        "auto_end_on_timeout": False,
        "warning_before_timeout_minutes": settings.default_warning_before_timeout_minutes,
    }
    for key, value in (case.get("session_config") or {}).items():
        if value is not None:
            config[key] = value
    return config


def _require_simulation_config(case: Dict[str, Any]) -> None:
    sim = case.get("patient_simulation_config")
    if not sim:
        raise ConfigurationError(
            f"Case {case['id']} has no patient simulation configuration",
            {"patient_simulation_config": "missing"},
        )
    missing = {f: "missing" for f in REQUIRED_SIMULATION_FIELDS if not sim.get(f)}
    if missing:
        raise ConfigurationError(
            f"Case {case['id']} patient simulation configuration is incomplete",
            {f"patient_simulation_config.{k}": v for k, v in missing.items()},
        )


async def _load_owned(db, session_id: int, student_id: Optional[int]) -> Dict[str, Any]:
    """Load a session; students only see their own (None = staff view)."""
    session = await q.get_session(db, session_id)
    if not session or (student_id is not None and session["student_id"] != student_id):
        raise NotFound("Session not found")
    return session


async def _transition(db, session_id: int, student_id: Optional[int], requested: str, from_status: str, build_fields):
    """Apply build_fields(session) if the session is in from_status, retrying lost races."""
    for _ in range(_CAS_ATTEMPTS):
        session = await _load_owned(db, session_id, student_id)
        if session["status"] != from_status:
            raise InvalidState(session["status"], requested)
        fields = build_fields(session)
        if await q.update_session_if(db, session_id, from_status, session["version"], fields):
            return session, await q.get_session(db, session_id)
    raise Conflict(f"Session {session_id} is being modified concurrently, retry the request")


# ── Create / read ─────────────────────────────────────────────────────

async def create_session(
    db,
    oracle,
    student_id: int,
    case_id: int,
    session_type: str,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Start a session, or return the live one for (student, case, type).

    Returns:
        dict with keys: session, already_existed, message
    """
    if session_type not in SESSION_TYPES:
        raise ValidationFailure(f"Unknown session type '{session_type}'", {"session_type": "invalid"})

    case = await q.get_case(db, case_id)
    if not case:
        raise NotFound("Case not found")

    existing = await q.get_live_session(db, student_id, case_id, session_type)
    if existing:
        logger.info(f"Returning live session {existing['id']} for student {student_id} case {case_id}")
        return {"session": existing, "already_existed": True, "message": "Active session already exists"}

    config = case_session_config(case)
    max_allowed = config.get("max_sessions_allowed")
    if max_allowed:
        finished = await q.count_sessions(db, student_id, case_id, statuses=FINISHED_STATUSES)
        if finished >= max_allowed:
            raise Conflict(f"Maximum number of sessions ({max_allowed}) reached for this case")

    if session_type == "patient_interview":
        _require_simulation_config(case)

    session_number = await q.count_sessions(db, student_id, case_id, session_type) + 1
    handle = await oracle.initialize_session(case, session_type)

    try:
        session_id = await q.create_session(
            db,
            student_id=student_id,
            case_id=case_id,
            session_type=session_type,
            session_number=session_number,
            started_at=now or q.utc_now(),
            internship_id=case.get("internship_id"),
            max_duration_minutes=config.get("session_duration_minutes"),
            oracle_session_id=handle,
        )
    except Exception as e:
        # The remote session opened above will never be used
        await _release_remote(oracle, handle, session_type, f"discarded create for student {student_id} case {case_id}")
        if not is_unique_violation(e):
            raise
        # Lost a race with a concurrent create for the same triple
        existing = await q.get_live_session(db, student_id, case_id, session_type)
        if existing is None:
            raise
        logger.info(f"Concurrent create for student {student_id} case {case_id}; using session {existing['id']}")
        return {"session": existing, "already_existed": True, "message": "Active session already exists"}

    logger.info(f"Created session {session_id} (#{session_number}, {session_type}) for student {student_id}")
    return {
        "session": await q.get_session(db, session_id),
        "already_existed": False,
        "message": "Session created successfully",
    }


async def _release_remote(oracle, handle: Optional[str], session_type: str, context: str) -> None:
    """Best-effort end of a remote simulator session; failures are only logged."""
    if not handle:
        return
    try:
        await oracle.end_session(handle, session_type)
    except Exception as e:
        logger.warning(f"Failed to end remote session for {context}: {e}")


async def get_session(db, session_id: int, student_id: Optional[int] = None) -> Dict[str, Any]:
    return await _load_owned(db, session_id, student_id)


async def append_message(
    db,
    session_id: int,
    student_id: Optional[int],
    role: str,
    content: str,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Append one transcript entry. Only ACTIVE sessions accept messages."""
    if role not in MESSAGE_ROLES:
        raise ValidationFailure(f"Unknown message role '{role}'", {"role": "invalid"})
    if not content or not content.strip():
        raise ValidationFailure("Message content is empty", {"content": "required"})

    entry = {"role": role, "content": content, "timestamp": now or q.utc_now()}

    def build(session):
        return {"messages": list(session.get("messages") or []) + [entry]}

    _, updated = await _transition(db, session_id, student_id, "message", STATUS_ACTIVE, build)
    return updated


# ── Pause / resume ────────────────────────────────────────────────────

async def pause_session(db, session_id: int, student_id: Optional[int], now: Optional[str] = None) -> Dict[str, Any]:
    """ACTIVE → PAUSED, folding active time since the last resume into the total."""
    now = now or q.utc_now()
    session = await _load_owned(db, session_id, student_id)
    if session["status"] != STATUS_ACTIVE:
        raise InvalidState(session["status"], "pause")

    case = await q.get_case(db, session["case_id"])
    if case and not case_session_config(case).get("allow_pause", True):
        raise InvalidState(session["status"], "pause", "Pausing is not allowed for this case")

    def build(current):
        history, total = timer.open_pause(current, now)
        return {
            "status": STATUS_PAUSED,
            "paused_at": now,
            "pause_history": history,
            "total_active_time_seconds": total,
        }

    _, updated = await _transition(db, session_id, student_id, "pause", STATUS_ACTIVE, build)
    logger.info(f"Paused session {session_id} at {updated['total_active_time_seconds']}s active")
    return updated


async def resume_session(db, session_id: int, student_id: Optional[int], now: Optional[str] = None) -> Dict[str, Any]:
    """PAUSED → ACTIVE, closing the open pause-history entry."""
    now = now or q.utc_now()

    def build(current):
        return {
            "status": STATUS_ACTIVE,
            "paused_at": None,
            "pause_history": timer.close_pause(current, now),
        }

    _, updated = await _transition(db, session_id, student_id, "resume", STATUS_PAUSED, build)
    logger.info(f"Resumed session {session_id}")
    return updated


# ── Complete ──────────────────────────────────────────────────────────

async def complete_session(
    db,
    oracle,
    session_id: int,
    student_id: Optional[int],
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """ACTIVE → COMPLETED. Releasing the remote session is best-effort."""
    now = now or q.utc_now()

    def build(current):
        return {
            "status": STATUS_COMPLETED,
            "ended_at": now,
            "paused_at": None,
            "total_active_time_seconds": timer.current_active_seconds(current, now),
        }

    _, updated = await _transition(db, session_id, student_id, "complete", STATUS_ACTIVE, build)
    logger.info(f"Session {session_id} completed")

    handle = updated.get("oracle_session_id")
    if handle:
        await _release_remote(oracle, handle, updated["session_type"], f"session {session_id}")
    else:
        logger.warning(f"Session {session_id} has no remote session handle to end")

    return updated


# ── Queries ───────────────────────────────────────────────────────────

async def get_timer(db, session_id: int, student_id: Optional[int], now: Optional[str] = None) -> Dict[str, Any]:
    session = await _load_owned(db, session_id, student_id)
    case = await q.get_case(db, session["case_id"])
    config = case_session_config(case) if case else None
    return timer.compute_timer(session, config, now or q.utc_now())


def session_summary(session: Dict[str, Any]) -> Dict[str, Any]:
    """A session without its transcript, for listings."""
    summary = {k: v for k, v in session.items() if k != "messages"}
    summary["message_count"] = len(session.get("messages") or [])
    return summary


async def session_history(db, student_id: int, case_id: int) -> Dict[str, Any]:
    case = await q.get_case(db, case_id)
    if not case:
        raise NotFound("Case not found")
    sessions = await q.list_sessions_for_case(db, student_id, case_id)
    max_allowed = case_session_config(case).get("max_sessions_allowed")

    completed = sum(1 for s in sessions if s["status"] in FINISHED_STATUSES)
    active = sum(1 for s in sessions if s["status"] in LIVE_STATUSES)
    return {
        "case_id": case_id,
        "case_title": case["title"],
        "sessions": [session_summary(s) for s in sessions],
        "statistics": {
            "total_sessions": len(sessions),
            "completed_sessions": completed,
            "active_sessions": active,
            "total_time_seconds": sum(s.get("total_active_time_seconds") or 0 for s in sessions),
            "max_sessions_allowed": max_allowed,
            "sessions_remaining": max(0, max_allowed - completed) if max_allowed else None,
        },
    }


async def active_session(db, student_id: int, case_id: int) -> Optional[Dict[str, Any]]:
    return await q.get_live_session(db, student_id, case_id)
