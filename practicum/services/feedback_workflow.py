"""
feedback_workflow.py - Professor review of generated assessments

validate_feedback() approves or rejects with an optional edited score;
update_feedback() amends AI-produced fields. Both append to the audit log,
mirror the outcome onto the session, and re-score the stage the session
was classified into.
"""

import logging
import math
from typing import Any, Dict, Optional

from practicum.db import queries as q
from practicum.errors import NotFound, ValidationFailure
from practicum.services import session_machine, stage_progress

logger = logging.getLogger(__name__)

STATUS_VALIDATED = "validated"
STATUS_REVISED = "revised"

TYPE_PROFESSOR_VALIDATED = "professor_validated"
TYPE_PROFESSOR_EDITED = "professor_edited"

# AI fields a professor may amend through update_feedback()
EDITABLE_AI_FIELDS = (
    "overall_score",
    "grade",
    "pass_fail",
    "criteria_scores",
    "strengths",
    "areas_for_improvement",
    "recommendations_next_session",
    "evolution_vs_previous_attempts",
    "literature_adherence",
    "clinical_reasoning",
)

_REVIEWED_FROM = (
    session_machine.STATUS_COMPLETED,
    session_machine.STATUS_PENDING_VALIDATION,
    session_machine.STATUS_VALIDATED,
    session_machine.STATUS_REVISED,
)


def _check_score(name: str, value: Optional[float]) -> None:
    if value is None:
        return
    if not isinstance(value, (int, float)) or isinstance(value, bool) or math.isnan(value) or not 0 <= value <= 100:
        raise ValidationFailure(f"{name} must be between 0 and 100", {name: "out_of_range"})


async def _load(db, feedback_id: int) -> Dict[str, Any]:
    feedback = await q.get_feedback(db, feedback_id)
    if not feedback:
        raise NotFound("Feedback not found")
    return feedback


async def _rescore(db, feedback: Dict[str, Any], score: Optional[float]) -> None:
    """Re-score the stage this feedback was classified into, if stage-tracked."""
    if score is None or not feedback.get("stage_number") or feedback.get("internship_id") is None:
        return
    try:
        await stage_progress.rescore_stage(
            db, feedback["student_id"], feedback["internship_id"], feedback["stage_number"], score
        )
    except NotFound:
        logger.warning(f"No stage progress to re-score for feedback {feedback['id']}")


async def validate_feedback(
    db,
    feedback_id: int,
    actor_id: int,
    is_approved: bool,
    professor_comments: Optional[str] = None,
    edited_score: Optional[float] = None,
) -> Dict[str, Any]:
    _check_score("edited_score", edited_score)
    feedback = await _load(db, feedback_id)
    now = q.utc_now()

    professor = {
        **(feedback.get("professor_feedback") or {}),
        "validated_by": actor_id,
        "is_approved": is_approved,
        "professor_comments": professor_comments,
        "edited_score": edited_score,
        "validation_date": now,
    }
    audit = list(feedback.get("audit_log") or []) + [{"action": "validated", "actor_id": actor_id, "at": now}]

    await q.update_feedback(db, feedback_id, {
        "status": STATUS_VALIDATED,
        "feedback_type": TYPE_PROFESSOR_EDITED if edited_score is not None else TYPE_PROFESSOR_VALIDATED,
        "professor_feedback": professor,
        "audit_log": audit,
    })
    await q.set_session_status(db, feedback["session_id"], session_machine.STATUS_VALIDATED, _REVIEWED_FROM)

    score = edited_score if edited_score is not None else (feedback.get("ai_feedback") or {}).get("overall_score")
    await _rescore(db, feedback, score)

    logger.info(f"Feedback {feedback_id} validated by {actor_id} (approved={is_approved})")
    return await q.get_feedback(db, feedback_id)


async def update_feedback(
    db,
    feedback_id: int,
    actor_id: int,
    ai_fields: Optional[Dict[str, Any]] = None,
    professor_comments: Optional[str] = None,
) -> Dict[str, Any]:
    """Amend AI-produced fields without an approve/reject decision."""
    ai_fields = {k: v for k, v in (ai_fields or {}).items() if v is not None}
    unknown = [k for k in ai_fields if k not in EDITABLE_AI_FIELDS]
    if unknown:
        raise ValidationFailure("Fields cannot be edited", {k: "not_editable" for k in unknown})
    _check_score("overall_score", ai_fields.get("overall_score"))

    feedback = await _load(db, feedback_id)
    now = q.utc_now()
    ai = {**(feedback.get("ai_feedback") or {}), **ai_fields}

    professor = {**(feedback.get("professor_feedback") or {}), "revised_by": actor_id, "revised_at": now}
    if professor_comments is not None:
        professor["professor_comments"] = professor_comments
    audit = list(feedback.get("audit_log") or []) + [
        {"action": "revised", "actor_id": actor_id, "at": now, "fields": sorted(ai_fields)}
    ]

    await q.update_feedback(db, feedback_id, {
        "status": STATUS_REVISED,
        "feedback_type": TYPE_PROFESSOR_EDITED,
        "ai_feedback": ai,
        "professor_feedback": professor,
        "audit_log": audit,
    })
    await q.set_session_status(db, feedback["session_id"], session_machine.STATUS_REVISED, _REVIEWED_FROM)

    if "overall_score" in ai_fields:
        await _rescore(db, feedback, ai_fields["overall_score"])

    logger.info(f"Feedback {feedback_id} revised by {actor_id}: {sorted(ai_fields)}")
    return await q.get_feedback(db, feedback_id)


async def get_feedback(db, feedback_id: int, student_id: Optional[int] = None) -> Dict[str, Any]:
    feedback = await _load(db, feedback_id)
    if student_id is not None and feedback["student_id"] != student_id:
        raise NotFound("Feedback not found")
    return feedback


async def list_pending(db, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    page = max(page, 1)
    total = await q.count_pending_feedback(db)
    items = await q.list_pending_feedback(db, offset=(page - 1) * limit, limit=limit)
    return {
        "feedbacks": items,
        "pagination_data": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def get_reviewed_for_case(db, student_id: int, case_id: int) -> Optional[Dict[str, Any]]:
    return await q.get_reviewed_feedback_for_case(db, student_id, case_id)
