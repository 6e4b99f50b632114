"""
assessment.py - Scoring a completed session through the oracle

Provides:
- generate_assessment() - score a COMPLETED session once and fan out effects
- complete_and_assess() - complete a session, then try to score it
- run_post_assessment_effects() - ledger / continuity store / stage progress

The feedback row is written before any effect runs. Effects run
concurrently, each with its own error handling: one failing never undoes
the feedback row or the other effects. Oracle failures leave the session
COMPLETED with no feedback, so generation can simply be retried.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from practicum.config import settings
from practicum.db import queries as q
from practicum.db.database import is_unique_violation
from practicum.errors import PracticumError, NotFound, InvalidState, ConfigurationError, UpstreamUnavailable
from practicum.services import attempt_ledger, session_machine, stage_classifier, stage_progress

logger = logging.getLogger(__name__)

RUBRIC_TOTAL_POINTS = 100
MIN_SCORE = 0
MAX_SCORE = 100
SUMMARY_MESSAGES = 6

GRADE_BANDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))

LIST_FIELDS = ("criteria_scores", "strengths", "areas_for_improvement", "recommendations_next_session")


def grade_for(score: float) -> str:
    for floor, grade in GRADE_BANDS:
        if score >= floor:
            return grade
    return "F"


def validate_rubric(case: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """The rubric to score against, keyed by its format.

    The richer assessment_criteria format must total exactly 100 points;
    otherwise the legacy evaluation_criteria list is used.
    """
    criteria = case.get("assessment_criteria") or []
    if criteria:
        total = sum(c.get("max_points") or 0 for c in criteria)
        if total != RUBRIC_TOTAL_POINTS:
            raise ConfigurationError(
                f"Assessment criteria of case {case['id']} total {total} points, expected {RUBRIC_TOTAL_POINTS}",
                {"assessment_criteria": f"total {total}"},
            )
        return {"assessment_criteria": criteria}

    legacy = case.get("evaluation_criteria") or []
    if not legacy:
        raise ConfigurationError(
            f"Case {case['id']} has no scoring rubric",
            {"assessment_criteria": "missing"},
        )
    return {"evaluation_criteria": legacy}


def normalize_oracle_result(raw: Dict[str, Any], case: Dict[str, Any], generated_at: str) -> Dict[str, Any]:
    """Fill in the fields the oracle may omit (grade, pass/fail, threshold, lists)."""
    if not isinstance(raw, dict):
        raise UpstreamUnavailable("Assessment service returned a malformed feedback payload")
    score = raw.get("overall_score")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        raise UpstreamUnavailable("Assessment service returned no usable overall_score")
    if not MIN_SCORE <= score <= MAX_SCORE:
        raise UpstreamUnavailable(f"Assessment service returned overall_score {score} outside {MIN_SCORE}-{MAX_SCORE}")

    feedback = dict(raw)
    threshold = raw.get("pass_threshold")
    if threshold is None:
        threshold = case.get("pass_threshold") or settings.default_pass_threshold
    feedback["pass_threshold"] = threshold
    feedback["grade"] = raw.get("grade") or grade_for(score)
    if raw.get("pass_fail") in ("PASS", "FAIL"):
        feedback["pass_fail"] = raw["pass_fail"]
    else:
        feedback["pass_fail"] = "PASS" if score >= threshold else "FAIL"
    for field in LIST_FIELDS:
        feedback[field] = raw.get(field) or []
    feedback["generated_at"] = generated_at
    return feedback


def _attempts_summary(history: Dict[str, Any]) -> Dict[str, Any]:
    if not history.get("found"):
        return {}
    attempts = history.get("attempts") or []
    return {
        "total_attempts": history["total_attempts"],
        "best_score": history["best_score"],
        "average_score": history["average_score"],
        "scores": [a["score"] for a in attempts],
        "last_areas_for_improvement": attempts[-1]["areas_for_improvement"] if attempts else [],
    }


def build_oracle_request(
    case: Dict[str, Any],
    session: Dict[str, Any],
    rubric: Dict[str, List[Dict[str, Any]]],
    history: Dict[str, Any],
    memory: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    sim = case.get("patient_simulation_config") or {}
    return {
        "case_id": str(case["id"]),
        "student_id": str(session["student_id"]),
        "session_id": str(session["id"]),
        "case_title": case["title"],
        "pass_threshold": case.get("pass_threshold") or settings.default_pass_threshold,
        "session_data": {
            "messages": session.get("messages") or [],
            "session_type": session["session_type"],
            "session_number": session["session_number"],
            "session_duration_minutes": (session.get("total_active_time_seconds") or 0) // 60,
        },
        **rubric,
        "literature_references": case.get("literature_references") or [],
        "previous_attempts": _attempts_summary(history),
        "memory": memory,
        "patient_profile": sim.get("patient_profile"),
    }


async def _read_memory(memory_store, student_id: int, internship_id: Optional[int]) -> Optional[Dict[str, Any]]:
    """Continuity context for scoring; unavailable memory only weakens context."""
    try:
        return await memory_store.get_memory(student_id, internship_id)
    except UpstreamUnavailable as e:
        logger.warning(f"Continuity memory unavailable for student {student_id}: {e.detail}")
        return None


def memory_payload(session: Dict[str, Any], feedback: Dict[str, Any]) -> Dict[str, Any]:
    messages = session.get("messages") or []
    ai = feedback.get("ai_feedback") or {}
    return {
        "student_id": session["student_id"],
        "internship_id": session.get("internship_id"),
        "case_id": session["case_id"],
        "session_id": session["id"],
        "session_number": session["session_number"],
        "session_type": session["session_type"],
        "summary": " ".join(m.get("content", "") for m in messages[-SUMMARY_MESSAGES:])[:1000],
        "assessment": {
            "score": ai.get("overall_score"),
            "grade": ai.get("grade"),
            "pass_fail": ai.get("pass_fail"),
            "strengths": ai.get("strengths") or [],
            "areas_for_improvement": ai.get("areas_for_improvement") or [],
        },
        "techniques_learned": stage_classifier.detect_techniques(messages),
    }


# ── Post-assessment effects ───────────────────────────────────────────

async def run_post_assessment_effects(
    db,
    memory_store,
    session: Dict[str, Any],
    feedback: Dict[str, Any],
    memory: Optional[Dict[str, Any]] = None,
) -> Dict[str, bool]:
    """Ledger, continuity store and stage progress, concurrently.

    Returns which effects succeeded. Failures are logged, never raised.
    """
    session_id = session["id"]

    async def ledger():
        await attempt_ledger.record_attempt(
            db,
            student_id=session["student_id"],
            case_id=session["case_id"],
            session_id=session_id,
            feedback=feedback,
            completed_at=session.get("ended_at"),
        )
        return True

    async def continuity():
        return await memory_store.record_session(memory_payload(session, feedback))

    async def stages():
        if session.get("internship_id") is None:
            return False
        await stage_progress.auto_update(
            db,
            student_id=session["student_id"],
            internship_id=session["internship_id"],
            case_id=session["case_id"],
            session=session,
            feedback=feedback,
            memory=memory,
        )
        return True

    names = ("ledger", "memory", "stage_progress")
    results = await asyncio.gather(ledger(), continuity(), stages(), return_exceptions=True)

    effects = {}
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            logger.error(f"Post-assessment {name} update failed for session {session_id}: {result}")
            effects[name] = False
        else:
            effects[name] = bool(result)
    return effects


# ── Orchestration ─────────────────────────────────────────────────────

async def generate_assessment(
    db,
    session_id: int,
    oracle,
    memory_store,
    student_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Score a completed session. Returns the existing record if there is one.

    Returns:
        dict with keys: feedback, already_existed, effects
    """
    session = await session_machine.get_session(db, session_id, student_id)

    existing = await q.get_feedback_for_session(db, session_id)
    if existing:
        logger.info(f"Feedback {existing['id']} already exists for session {session_id}")
        return {"feedback": existing, "already_existed": True, "effects": None}

    if session["status"] != session_machine.STATUS_COMPLETED:
        raise InvalidState(session["status"], "assess")

    case = await q.get_case(db, session["case_id"])
    if not case:
        raise NotFound("Case not found")
    rubric = validate_rubric(case)

    memory = await _read_memory(memory_store, session["student_id"], session.get("internship_id"))
    history = await attempt_ledger.get_case_history(db, session["student_id"], session["case_id"])
    request = build_oracle_request(case, session, rubric, history, memory)

    logger.info(f"Requesting assessment for session {session_id}")
    raw = await oracle.generate_feedback(request)
    ai_feedback = normalize_oracle_result(raw, case, q.utc_now())

    try:
        feedback_id = await q.create_feedback(
            db,
            session_id=session_id,
            student_id=session["student_id"],
            case_id=session["case_id"],
            ai_feedback=ai_feedback,
            internship_id=session.get("internship_id"),
        )
    except Exception as e:
        if not is_unique_violation(e):
            raise
        existing = await q.get_feedback_for_session(db, session_id)
        logger.info(f"Concurrent generation for session {session_id}; keeping feedback {existing['id']}")
        return {"feedback": existing, "already_existed": True, "effects": None}

    await q.set_session_status(
        db, session_id, session_machine.STATUS_PENDING_VALIDATION, [session_machine.STATUS_COMPLETED]
    )
    feedback = await q.get_feedback(db, feedback_id)
    logger.info(
        f"Feedback {feedback_id} created for session {session_id}: "
        f"{ai_feedback['overall_score']} ({ai_feedback['grade']}, {ai_feedback['pass_fail']})"
    )

    effects = await run_post_assessment_effects(db, memory_store, session, feedback, memory)
    return {
        "feedback": await q.get_feedback(db, feedback_id),
        "already_existed": False,
        "effects": effects,
    }


async def complete_and_assess(
    db,
    oracle,
    memory_store,
    session_id: int,
    student_id: Optional[int],
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Complete the session, then score it.

    Completion stands even when scoring fails; the failure category is
    returned so the caller can retry generation later.
    """
    await session_machine.complete_session(db, oracle, session_id, student_id, now=now)

    result = {"feedback": None, "assessment_error": None, "effects": None}
    try:
        generated = await generate_assessment(db, session_id, oracle, memory_store, student_id)
        result["feedback"] = generated["feedback"]
        result["effects"] = generated["effects"]
    except PracticumError as e:
        logger.warning(f"Session {session_id} completed but assessment failed ({e.category}): {e.detail}")
        result["assessment_error"] = {"category": e.category, "detail": e.detail}

    result["session"] = await q.get_session(db, session_id)
    return result
