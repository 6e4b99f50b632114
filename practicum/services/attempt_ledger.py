"""
attempt_ledger.py - Append-only record of scoring attempts per (student, case)

Provides:
- record_attempt() - append a scored attempt and refresh derived figures
- get_case_history() - one student's ledger on one case
- get_student_statistics() - cross-case statistics for a student
- get_patient_progression() - cases sharing a patient, in curriculum order
- get_best_score() / update_status()

current_status follows the latest attempt ("passed" / "needs_retry");
first_passed_at is written once, on the first PASS, and never cleared.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from practicum.db import queries as q
from practicum.db.database import is_unique_violation
from practicum.errors import NotFound, ValidationFailure

logger = logging.getLogger(__name__)

STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_PASSED = "passed"
STATUS_NEEDS_RETRY = "needs_retry"
LEDGER_STATUSES = (STATUS_NOT_STARTED, STATUS_IN_PROGRESS, STATUS_PASSED, STATUS_NEEDS_RETRY)

_APPEND_ATTEMPTS = 3


def round_half_up(value: float) -> int:
    """Round .5 away from zero (round() in Python rounds half to even)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def derive_figures(scores: List[float]) -> Dict[str, Any]:
    if not scores:
        return {"total_attempts": 0, "best_score": None, "average_score": None}
    return {
        "total_attempts": len(scores),
        "best_score": max(scores),
        "average_score": round_half_up(sum(scores) / len(scores)),
    }


async def _get_or_create_ledger(db, student_id: int, case: Dict[str, Any]) -> Dict[str, Any]:
    ledger = await q.get_ledger(db, student_id, case["id"])
    if ledger:
        return ledger
    try:
        await q.create_ledger(
            db,
            student_id=student_id,
            case_id=case["id"],
            internship_id=case.get("internship_id"),
            step=case.get("step"),
            patient_base_id=case.get("patient_base_id"),
        )
    except Exception as e:
        if not is_unique_violation(e):
            raise
    return await q.get_ledger(db, student_id, case["id"])


async def record_attempt(
    db,
    student_id: int,
    case_id: int,
    session_id: Optional[int],
    feedback: Dict[str, Any],
    completed_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Append the attempt scored by `feedback` to the student's ledger for the case.

    Recording the same session twice returns the first attempt.
    """
    case = await q.get_case(db, case_id)
    if not case:
        raise NotFound("Case not found")

    ai = feedback.get("ai_feedback") or {}
    score = ai.get("overall_score")
    if score is None:
        raise ValidationFailure("Assessment has no overall score", {"overall_score": "missing"})
    pass_fail = ai.get("pass_fail") or "FAIL"
    completed_at = completed_at or q.utc_now()

    ledger = await _get_or_create_ledger(db, student_id, case)

    if session_id is not None:
        existing = await q.get_attempt_for_session(db, ledger["id"], session_id)
        if existing:
            logger.info(f"Attempt for session {session_id} already recorded as #{existing['attempt_number']}")
            return _ledger_result(ledger, existing["attempt_number"], already_recorded=True)

    attempt_number = None
    for attempt in range(_APPEND_ATTEMPTS):
        try:
            attempt_number = await q.append_attempt_entry(
                db,
                ledger_id=ledger["id"],
                score=score,
                pass_fail=pass_fail,
                completed_at=completed_at,
                session_id=session_id,
                feedback_id=feedback.get("id"),
                grade=ai.get("grade"),
                pass_threshold=ai.get("pass_threshold"),
                key_learnings=ai.get("key_learnings") or ai.get("recommendations_next_session") or [],
                mistakes_made=ai.get("mistakes_made") or ai.get("areas_for_improvement") or [],
                strengths=ai.get("strengths") or [],
                areas_for_improvement=ai.get("areas_for_improvement") or [],
            )
            break
        except Exception as e:
            if not is_unique_violation(e) or attempt == _APPEND_ATTEMPTS - 1:
                raise
            logger.warning(f"Attempt number collision on ledger {ledger['id']}, retrying")

    entries = await q.list_attempt_entries(db, ledger["id"])
    fields = derive_figures([e["score"] for e in entries])
    fields["last_attempt_at"] = completed_at
    if pass_fail == "PASS":
        fields["current_status"] = STATUS_PASSED
        if not ledger.get("first_passed_at"):
            fields["first_passed_at"] = completed_at
    else:
        fields["current_status"] = STATUS_NEEDS_RETRY
    await q.update_ledger(db, ledger["id"], fields)

    logger.info(
        f"Recorded attempt #{attempt_number} for student {student_id} on case {case_id}: "
        f"score={score} {pass_fail}"
    )
    return _ledger_result({**ledger, **fields}, attempt_number)


def _ledger_result(ledger: Dict[str, Any], attempt_number: int, already_recorded: bool = False) -> Dict[str, Any]:
    return {
        "ledger_id": ledger["id"],
        "attempt_number": attempt_number,
        "total_attempts": ledger.get("total_attempts"),
        "best_score": ledger.get("best_score"),
        "average_score": ledger.get("average_score"),
        "current_status": ledger.get("current_status"),
        "first_passed_at": ledger.get("first_passed_at"),
        "already_recorded": already_recorded,
    }


async def get_case_history(db, student_id: int, case_id: int) -> Dict[str, Any]:
    ledger = await q.get_ledger(db, student_id, case_id)
    if not ledger:
        return {
            "found": False,
            "student_id": student_id,
            "case_id": case_id,
            "attempts": [],
            "total_attempts": 0,
            "best_score": 0,
            "average_score": 0,
            "current_status": STATUS_NOT_STARTED,
            "first_passed_at": None,
        }
    entries = await q.list_attempt_entries(db, ledger["id"])
    return {"found": True, **ledger, "attempts": entries}


async def get_student_statistics(db, student_id: int, internship_id: Optional[int] = None) -> Dict[str, Any]:
    ledgers = await q.list_ledgers_for_student(db, student_id, internship_id)
    total_cases = len(ledgers)
    passed_cases = sum(1 for row in ledgers if row["current_status"] == STATUS_PASSED)
    averages = [row["average_score"] for row in ledgers if row["average_score"] is not None]
    return {
        "student_id": student_id,
        "internship_id": internship_id,
        "total_cases": total_cases,
        "passed_cases": passed_cases,
        "total_attempts": sum(row["total_attempts"] for row in ledgers),
        "overall_average_score": round_half_up(sum(averages) / len(averages)) if averages else 0,
        "pass_rate": round_half_up(passed_cases / total_cases * 100) if total_cases else 0,
        "cases": [
            {
                "case_id": row["case_id"],
                "case_title": row["case_title"],
                "step": row["step"],
                "total_attempts": row["total_attempts"],
                "best_score": row["best_score"],
                "average_score": row["average_score"],
                "current_status": row["current_status"],
                "first_passed_at": row["first_passed_at"],
                "last_attempt_at": row["last_attempt_at"],
            }
            for row in ledgers
        ],
    }


async def get_patient_progression(db, student_id: int, patient_base_id: str) -> Dict[str, Any]:
    """How a student progressed across every case built on the same patient."""
    ledgers = await q.list_ledgers_for_patient(db, student_id, patient_base_id)
    progression = []
    for ledger in ledgers:
        entries = await q.list_attempt_entries(db, ledger["id"])
        progression.append({
            "case_id": ledger["case_id"],
            "case_title": ledger["case_title"],
            "step": ledger["step"],
            "sequence_in_step": ledger["sequence_in_step"],
            "total_attempts": ledger["total_attempts"],
            "best_score": ledger["best_score"],
            "current_status": ledger["current_status"],
            "scores": [e["score"] for e in entries],
            "key_learnings": [k for e in entries for k in e["key_learnings"]],
        })
    return {"student_id": student_id, "patient_base_id": patient_base_id, "progression": progression}


async def get_best_score(db, student_id: int, case_id: int) -> Optional[float]:
    ledger = await q.get_ledger(db, student_id, case_id)
    return ledger["best_score"] if ledger else None


async def update_status(db, student_id: int, case_id: int, status: str) -> Dict[str, Any]:
    """Professor override of current_status. first_passed_at is left alone."""
    if status not in LEDGER_STATUSES:
        raise ValidationFailure(f"Unknown ledger status '{status}'", {"status": "invalid"})
    ledger = await q.get_ledger(db, student_id, case_id)
    if not ledger:
        raise NotFound("No attempts recorded for this case")
    await q.update_ledger(db, ledger["id"], {"current_status": status})
    return {**ledger, "current_status": status}
