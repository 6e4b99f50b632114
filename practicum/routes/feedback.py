from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from practicum.db.database import get_db
from practicum.errors import NotFound
from practicum.models.internship import FeedbackValidation, FeedbackUpdate
from practicum.routes.auth import get_current_user, require_staff, is_staff, owner_scope
from practicum.services import assessment, feedback_workflow
from practicum.services.oracle_client import get_oracle
from practicum.services.memory_client import get_memory_store

router = APIRouter(prefix="/api/internship/feedback", tags=["feedback"])


@router.post("/sessions/{session_id}/generate")
async def generate_feedback(
    session_id: int,
    request: Request,
    db=Depends(get_db),
    oracle=Depends(get_oracle),
    memory_store=Depends(get_memory_store),
):
    """(Re)generate the assessment of a completed session.

    Safe to call repeatedly: an existing assessment is returned unchanged.
    """
    user = await get_current_user(request)
    result = await assessment.generate_assessment(db, session_id, oracle, memory_store, owner_scope(user))
    return {
        "feedback": result["feedback"],
        "already_existed": result["already_existed"],
        "effects": result["effects"],
    }


@router.get("/pending")
async def pending_feedback(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    await require_staff(request)
    return await feedback_workflow.list_pending(db, page=page, limit=limit)


@router.get("/cases/{case_id}")
async def case_feedback(case_id: int, request: Request, student_id: Optional[int] = None, db=Depends(get_db)):
    """Latest reviewed feedback of a student on a case."""
    user = await get_current_user(request)
    target = student_id if is_staff(user) and student_id is not None else user["id"]
    feedback = await feedback_workflow.get_reviewed_for_case(db, target, case_id)
    if not feedback:
        raise NotFound("No reviewed feedback for this case yet")
    return feedback


@router.get("/{feedback_id}")
async def get_feedback(feedback_id: int, request: Request, db=Depends(get_db)):
    user = await get_current_user(request)
    return await feedback_workflow.get_feedback(db, feedback_id, owner_scope(user))


@router.post("/{feedback_id}/validate")
async def validate_feedback(feedback_id: int, body: FeedbackValidation, request: Request, db=Depends(get_db)):
    user = await require_staff(request)
    return await feedback_workflow.validate_feedback(
        db,
        feedback_id,
        actor_id=user["id"],
        is_approved=body.is_approved,
        professor_comments=body.professor_comments,
        edited_score=body.edited_score,
    )


@router.patch("/{feedback_id}")
async def update_feedback(feedback_id: int, body: FeedbackUpdate, request: Request, db=Depends(get_db)):
    user = await require_staff(request)
    fields = body.model_dump(exclude_none=True)
    comments = fields.pop("professor_comments", None)
    return await feedback_workflow.update_feedback(
        db, feedback_id, actor_id=user["id"], ai_fields=fields, professor_comments=comments
    )
