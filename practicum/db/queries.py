"""
queries.py - Database helper queries for the practicum session engine

Provides insert/fetch/update functions for:
- cases (read-mostly; owned by the curriculum service)
- sessions
- feedback
- case_attempts / case_attempt_entries
- stage_progress
"""

import json
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable
import aiosqlite


CASE_JSON_FIELDS = [
    "session_config",
    "patient_simulation_config",
    "evaluation_criteria",
    "assessment_criteria",
    "literature_references",
]
SESSION_JSON_FIELDS = ["pause_history", "messages"]
FEEDBACK_JSON_FIELDS = ["ai_feedback", "professor_feedback", "audit_log"]
ENTRY_JSON_FIELDS = ["key_learnings", "mistakes_made", "strengths", "areas_for_improvement"]
STAGE_JSON_FIELDS = ["stage_1", "stage_2", "stage_3", "thresholds"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ══════════════════════════════════════════════════════════════════════════════
# CASES
# ══════════════════════════════════════════════════════════════════════════════

async def create_case(
    db: aiosqlite.Connection,
    title: str,
    internship_id: Optional[int] = None,
    step: Optional[int] = None,
    sequence_in_step: Optional[int] = None,
    patient_base_id: Optional[str] = None,
    pass_threshold: Optional[float] = None,
    session_config: Optional[Dict[str, Any]] = None,
    patient_simulation_config: Optional[Dict[str, Any]] = None,
    evaluation_criteria: Optional[List[Dict[str, Any]]] = None,
    assessment_criteria: Optional[List[Dict[str, Any]]] = None,
    literature_references: Optional[List[Dict[str, Any]]] = None,
) -> int:
    """Insert a case. Cases are authored elsewhere; this is used for seeding. Returns the new case ID."""
    cursor = await db.execute(
        """INSERT INTO cases (internship_id, title, step, sequence_in_step, patient_base_id,
                              pass_threshold, session_config, patient_simulation_config,
                              evaluation_criteria, assessment_criteria, literature_references,
                              created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            internship_id,
            title,
            step,
            sequence_in_step,
            patient_base_id,
            pass_threshold,
            json.dumps(session_config or {}),
            json.dumps(patient_simulation_config) if patient_simulation_config is not None else None,
            json.dumps(evaluation_criteria or []),
            json.dumps(assessment_criteria or []),
            json.dumps(literature_references or []),
            utc_now(),
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def get_case(db: aiosqlite.Connection, case_id: int) -> Optional[Dict[str, Any]]:
    """Get a non-deleted case by ID."""
    cursor = await db.execute(
        "SELECT * FROM cases WHERE id = ? AND deleted_at IS NULL",
        (case_id,),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=CASE_JSON_FIELDS)


# ══════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

async def create_session(
    db: aiosqlite.Connection,
    student_id: int,
    case_id: int,
    session_type: str,
    session_number: int,
    started_at: str,
    internship_id: Optional[int] = None,
    max_duration_minutes: Optional[int] = None,
    oracle_session_id: Optional[str] = None,
) -> int:
    """Create a new ACTIVE session. Returns the new session ID.

    Raises the driver's integrity error if a live session already exists
    for (student, case, type); callers check with is_unique_violation().
    """
    cursor = await db.execute(
        """INSERT INTO sessions (student_id, case_id, internship_id, session_type, status,
                                 session_number, started_at, pause_history,
                                 total_active_time_seconds, max_duration_minutes, messages,
                                 oracle_session_id, version, created_at, updated_at)
           VALUES (?, ?, ?, ?, 'active', ?, ?, '[]', 0, ?, '[]', ?, 0, ?, ?)""",
        (
            student_id,
            case_id,
            internship_id,
            session_type,
            session_number,
            started_at,
            max_duration_minutes,
            oracle_session_id,
            started_at,
            started_at,
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def get_session(db: aiosqlite.Connection, session_id: int) -> Optional[Dict[str, Any]]:
    """Get a non-deleted session by ID."""
    cursor = await db.execute(
        "SELECT * FROM sessions WHERE id = ? AND deleted_at IS NULL",
        (session_id,),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=SESSION_JSON_FIELDS)


async def get_live_session(
    db: aiosqlite.Connection,
    student_id: int,
    case_id: int,
    session_type: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Get the ACTIVE or PAUSED session for (student, case[, type]), if any."""
    sql = """SELECT * FROM sessions
             WHERE student_id = ? AND case_id = ? AND deleted_at IS NULL
               AND status IN ('active', 'paused')"""
    params: list = [student_id, case_id]
    if session_type is not None:
        sql += " AND session_type = ?"
        params.append(session_type)
    sql += " ORDER BY started_at DESC LIMIT 1"
    cursor = await db.execute(sql, tuple(params))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=SESSION_JSON_FIELDS)


async def count_sessions(
    db: aiosqlite.Connection,
    student_id: int,
    case_id: int,
    session_type: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> int:
    """Count non-deleted sessions for (student, case), optionally by type and status."""
    sql = "SELECT COUNT(*) AS cnt FROM sessions WHERE student_id = ? AND case_id = ? AND deleted_at IS NULL"
    params: list = [student_id, case_id]
    if session_type is not None:
        sql += " AND session_type = ?"
        params.append(session_type)
    if statuses:
        statuses = list(statuses)
        sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    cursor = await db.execute(sql, tuple(params))
    row = await cursor.fetchone()
    return row["cnt"] if row else 0


async def list_sessions_for_case(
    db: aiosqlite.Connection, student_id: int, case_id: int
) -> List[Dict[str, Any]]:
    """All sessions of a student on a case, newest first."""
    cursor = await db.execute(
        """SELECT * FROM sessions
           WHERE student_id = ? AND case_id = ? AND deleted_at IS NULL
           ORDER BY started_at DESC, id DESC""",
        (student_id, case_id),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=SESSION_JSON_FIELDS) for r in rows]


async def list_sessions_for_internship(
    db: aiosqlite.Connection, student_id: int, internship_id: int
) -> List[Dict[str, Any]]:
    """Sessions of a student within an internship, oldest first (timeline order)."""
    cursor = await db.execute(
        """SELECT * FROM sessions
           WHERE student_id = ? AND internship_id = ? AND deleted_at IS NULL
           ORDER BY started_at ASC, id ASC""",
        (student_id, internship_id),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=SESSION_JSON_FIELDS) for r in rows]


async def update_session_if(
    db: aiosqlite.Connection,
    session_id: int,
    expected_status: str,
    expected_version: int,
    fields: Dict[str, Any],
) -> bool:
    """Compare-and-set update of a session.

    Applies `fields` only if the row still has `expected_status` and
    `expected_version`; bumps the version. Returns True if a row changed.
    """
    values = {k: (json.dumps(v) if k in SESSION_JSON_FIELDS else v) for k, v in fields.items()}
    values["updated_at"] = utc_now()
    assignments = ", ".join(f"{col} = ?" for col in values)
    cursor = await db.execute(
        f"""UPDATE sessions
            SET {assignments}, version = version + 1
            WHERE id = ? AND status = ? AND version = ? AND deleted_at IS NULL""",
        (*values.values(), session_id, expected_status, expected_version),
    )
    await db.commit()
    return cursor.rowcount == 1


async def set_session_status(
    db: aiosqlite.Connection,
    session_id: int,
    status: str,
    from_statuses: Iterable[str],
) -> bool:
    """Move a session to `status` if it is currently in one of `from_statuses`."""
    from_statuses = list(from_statuses)
    cursor = await db.execute(
        f"""UPDATE sessions
            SET status = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND status IN ({', '.join('?' for _ in from_statuses)})""",
        (status, utc_now(), session_id, *from_statuses),
    )
    await db.commit()
    return cursor.rowcount == 1


# ══════════════════════════════════════════════════════════════════════════════
# FEEDBACK
# ══════════════════════════════════════════════════════════════════════════════

async def create_feedback(
    db: aiosqlite.Connection,
    session_id: int,
    student_id: int,
    case_id: int,
    ai_feedback: Dict[str, Any],
    internship_id: Optional[int] = None,
    status: str = "pending_validation",
    feedback_type: str = "auto_generated",
) -> int:
    """Create the assessment record for a session. Returns the new feedback ID.

    UNIQUE(session_id) rejects a second record for the same session.
    """
    now = utc_now()
    cursor = await db.execute(
        """INSERT INTO feedback (session_id, student_id, case_id, internship_id, feedback_type,
                                 status, ai_feedback, professor_feedback, audit_log,
                                 created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, '{}', ?, ?, ?)""",
        (
            session_id,
            student_id,
            case_id,
            internship_id,
            feedback_type,
            status,
            json.dumps(ai_feedback),
            json.dumps([{"action": "generated", "actor_id": None, "at": now}]),
            now,
            now,
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def get_feedback(db: aiosqlite.Connection, feedback_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute("SELECT * FROM feedback WHERE id = ?", (feedback_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=FEEDBACK_JSON_FIELDS)


async def get_feedback_for_session(db: aiosqlite.Connection, session_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute("SELECT * FROM feedback WHERE session_id = ?", (session_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=FEEDBACK_JSON_FIELDS)


async def list_feedback_for_sessions(
    db: aiosqlite.Connection, session_ids: List[int]
) -> Dict[int, Dict[str, Any]]:
    """Map session_id → feedback for the given sessions."""
    if not session_ids:
        return {}
    cursor = await db.execute(
        f"SELECT * FROM feedback WHERE session_id IN ({', '.join('?' for _ in session_ids)})",
        tuple(session_ids),
    )
    rows = await cursor.fetchall()
    result = {}
    for r in rows:
        fb = _row_to_dict(r, parse_json_fields=FEEDBACK_JSON_FIELDS)
        result[fb["session_id"]] = fb
    return result


async def list_pending_feedback(
    db: aiosqlite.Connection, offset: int = 0, limit: int = 20
) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT f.*, c.title AS case_title
           FROM feedback f
           JOIN cases c ON c.id = f.case_id
           WHERE f.status = 'pending_validation'
           ORDER BY f.created_at DESC, f.id DESC
           LIMIT ? OFFSET ?""",
        (limit, offset),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=FEEDBACK_JSON_FIELDS) for r in rows]


async def count_pending_feedback(db: aiosqlite.Connection) -> int:
    cursor = await db.execute(
        "SELECT COUNT(*) AS cnt FROM feedback WHERE status = 'pending_validation'"
    )
    row = await cursor.fetchone()
    return row["cnt"] if row else 0


async def get_reviewed_feedback_for_case(
    db: aiosqlite.Connection, student_id: int, case_id: int
) -> Optional[Dict[str, Any]]:
    """Newest VALIDATED or REVISED feedback of a student on a case."""
    cursor = await db.execute(
        """SELECT * FROM feedback
           WHERE student_id = ? AND case_id = ? AND status IN ('validated', 'revised')
           ORDER BY created_at DESC, id DESC
           LIMIT 1""",
        (student_id, case_id),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=FEEDBACK_JSON_FIELDS)


async def update_feedback(db: aiosqlite.Connection, feedback_id: int, fields: Dict[str, Any]) -> None:
    values = {k: (json.dumps(v) if k in FEEDBACK_JSON_FIELDS else v) for k, v in fields.items()}
    values["updated_at"] = utc_now()
    assignments = ", ".join(f"{col} = ?" for col in values)
    await db.execute(
        f"UPDATE feedback SET {assignments} WHERE id = ?",
        (*values.values(), feedback_id),
    )
    await db.commit()


# ══════════════════════════════════════════════════════════════════════════════
# ATTEMPT LEDGER
# ══════════════════════════════════════════════════════════════════════════════

async def get_ledger(db: aiosqlite.Connection, student_id: int, case_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM case_attempts WHERE student_id = ? AND case_id = ?",
        (student_id, case_id),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row)


async def create_ledger(
    db: aiosqlite.Connection,
    student_id: int,
    case_id: int,
    internship_id: Optional[int] = None,
    step: Optional[int] = None,
    patient_base_id: Optional[str] = None,
) -> int:
    """Create an empty ledger for (student, case). UNIQUE(student_id, case_id) applies."""
    now = utc_now()
    cursor = await db.execute(
        """INSERT INTO case_attempts (student_id, case_id, internship_id, step, patient_base_id,
                                      total_attempts, current_status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 0, 'in_progress', ?, ?)""",
        (student_id, case_id, internship_id, step, patient_base_id, now, now),
    )
    await db.commit()
    return cursor.lastrowid


async def update_ledger(db: aiosqlite.Connection, ledger_id: int, fields: Dict[str, Any]) -> None:
    values = dict(fields)
    values["updated_at"] = utc_now()
    assignments = ", ".join(f"{col} = ?" for col in values)
    await db.execute(
        f"UPDATE case_attempts SET {assignments} WHERE id = ?",
        (*values.values(), ledger_id),
    )
    await db.commit()


async def list_attempt_entries(db: aiosqlite.Connection, ledger_id: int) -> List[Dict[str, Any]]:
    """Attempts of a ledger in attempt_number order."""
    cursor = await db.execute(
        "SELECT * FROM case_attempt_entries WHERE ledger_id = ? ORDER BY attempt_number",
        (ledger_id,),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=ENTRY_JSON_FIELDS) for r in rows]


async def get_attempt_for_session(
    db: aiosqlite.Connection, ledger_id: int, session_id: int
) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM case_attempt_entries WHERE ledger_id = ? AND session_id = ?",
        (ledger_id, session_id),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=ENTRY_JSON_FIELDS)


async def append_attempt_entry(
    db: aiosqlite.Connection,
    ledger_id: int,
    score: float,
    pass_fail: str,
    completed_at: str,
    session_id: Optional[int] = None,
    feedback_id: Optional[int] = None,
    grade: Optional[str] = None,
    pass_threshold: Optional[float] = None,
    key_learnings: Optional[List[str]] = None,
    mistakes_made: Optional[List[str]] = None,
    strengths: Optional[List[str]] = None,
    areas_for_improvement: Optional[List[str]] = None,
) -> int:
    """Append an attempt with the next attempt_number. Returns that number.

    The number is computed inside the INSERT; UNIQUE(ledger_id, attempt_number)
    rejects a concurrent writer that computed the same one.
    """
    cursor = await db.execute(
        """INSERT INTO case_attempt_entries (ledger_id, attempt_number, session_id, feedback_id,
                                             score, grade, pass_fail, pass_threshold,
                                             key_learnings, mistakes_made, strengths,
                                             areas_for_improvement, completed_at)
           SELECT ?, COALESCE(MAX(attempt_number), 0) + 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
           FROM case_attempt_entries WHERE ledger_id = ?""",
        (
            ledger_id,
            session_id,
            feedback_id,
            float(score),
            grade,
            pass_fail,
            pass_threshold,
            json.dumps(key_learnings or []),
            json.dumps(mistakes_made or []),
            json.dumps(strengths or []),
            json.dumps(areas_for_improvement or []),
            completed_at,
            ledger_id,
        ),
    )
    await db.commit()
    cursor = await db.execute(
        "SELECT attempt_number FROM case_attempt_entries WHERE id = ?",
        (cursor.lastrowid,),
    )
    row = await cursor.fetchone()
    return row["attempt_number"]


async def list_ledgers_for_student(
    db: aiosqlite.Connection, student_id: int, internship_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    sql = """SELECT ca.*, c.title AS case_title
             FROM case_attempts ca
             JOIN cases c ON c.id = ca.case_id
             WHERE ca.student_id = ?"""
    params: list = [student_id]
    if internship_id is not None:
        sql += " AND ca.internship_id = ?"
        params.append(internship_id)
    sql += " ORDER BY ca.step, ca.case_id"
    cursor = await db.execute(sql, tuple(params))
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


async def list_ledgers_for_patient(
    db: aiosqlite.Connection, student_id: int, patient_base_id: str
) -> List[Dict[str, Any]]:
    """Ledgers of all cases sharing a patient, in curriculum order."""
    cursor = await db.execute(
        """SELECT ca.*, c.title AS case_title, c.sequence_in_step
           FROM case_attempts ca
           JOIN cases c ON c.id = ca.case_id
           WHERE ca.student_id = ? AND ca.patient_base_id = ?
           ORDER BY c.step, c.sequence_in_step, ca.case_id""",
        (student_id, patient_base_id),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# STAGE PROGRESS
# ══════════════════════════════════════════════════════════════════════════════

async def get_stage_progress(
    db: aiosqlite.Connection, student_id: int, internship_id: int
) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM stage_progress WHERE student_id = ? AND internship_id = ?",
        (student_id, internship_id),
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _stage_row(row)


async def create_stage_progress(
    db: aiosqlite.Connection,
    student_id: int,
    internship_id: int,
    stages: Dict[str, Dict[str, Any]],
    thresholds: Dict[str, Any],
) -> int:
    now = utc_now()
    cursor = await db.execute(
        """INSERT INTO stage_progress (student_id, internship_id, stage_1, stage_2, stage_3,
                                       overall_progress_percentage, total_sessions,
                                       all_stages_completed, thresholds, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?)""",
        (
            student_id,
            internship_id,
            json.dumps(stages["stage_1"]),
            json.dumps(stages["stage_2"]),
            json.dumps(stages["stage_3"]),
            json.dumps(thresholds),
            now,
            now,
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def save_stage_progress(db: aiosqlite.Connection, record: Dict[str, Any]) -> bool:
    """Persist every mutable column of a stage progress record.

    Writes only if the row still has the version the record was read at,
    and bumps it. Returns True if the row changed.
    """
    cursor = await db.execute(
        """UPDATE stage_progress
           SET stage_1 = ?, stage_2 = ?, stage_3 = ?,
               overall_progress_percentage = ?, total_sessions = ?, overall_score = ?,
               all_stages_completed = ?, internship_completed_at = ?, thresholds = ?,
               updated_at = ?, version = version + 1
           WHERE id = ? AND version = ?""",
        (
            json.dumps(record["stage_1"]),
            json.dumps(record["stage_2"]),
            json.dumps(record["stage_3"]),
            float(record["overall_progress_percentage"]),
            record["total_sessions"],
            record["overall_score"],
            1 if record["all_stages_completed"] else 0,
            record["internship_completed_at"],
            json.dumps(record["thresholds"]),
            utc_now(),
            record["id"],
            record["version"],
        ),
    )
    await db.commit()
    return cursor.rowcount == 1


async def list_stage_progress(db: aiosqlite.Connection, internship_id: int) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM stage_progress WHERE internship_id = ? ORDER BY student_id",
        (internship_id,),
    )
    rows = await cursor.fetchall()
    return [_stage_row(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def _stage_row(row: aiosqlite.Row) -> Dict[str, Any]:
    result = _row_to_dict(row, parse_json_fields=STAGE_JSON_FIELDS)
    result["all_stages_completed"] = bool(result.get("all_stages_completed"))
    return result


def _row_to_dict(row: aiosqlite.Row, parse_json_fields: List[str] = None) -> Dict[str, Any]:
    """Convert a database row to a dictionary, optionally parsing JSON fields."""
    if row is None:
        return None

    result = {k: row[k] for k in row.keys()}

    if parse_json_fields:
        for field in parse_json_fields:
            if field in result and result[field]:
                try:
                    result[field] = json.loads(result[field])
                except (json.JSONDecodeError, TypeError):
                    pass  # Keep original value if JSON parsing fails

    return result
