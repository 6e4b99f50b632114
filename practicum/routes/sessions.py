from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from practicum.db.database import get_db
from practicum.models.internship import SessionCreate, MessageCreate
from practicum.routes.auth import get_current_user, require_role, is_staff, owner_scope
from practicum.services import session_machine, assessment
from practicum.services.oracle_client import get_oracle
from practicum.services.memory_client import get_memory_store

router = APIRouter(prefix="/api/internship/sessions", tags=["sessions"])


def _target_student(user: dict, student_id: Optional[int]) -> int:
    """Students act on themselves; staff must name the student."""
    if not is_staff(user):
        return user["id"]
    if student_id is None:
        raise HTTPException(status_code=400, detail="student_id is required")
    return student_id


@router.post("")
async def create_session(
    body: SessionCreate,
    request: Request,
    db=Depends(get_db),
    oracle=Depends(get_oracle),
):
    user = await require_role("student")(request)
    return await session_machine.create_session(db, oracle, user["id"], body.case_id, body.session_type)


@router.get("/cases/{case_id}/history")
async def session_history(case_id: int, request: Request, student_id: Optional[int] = None, db=Depends(get_db)):
    user = await get_current_user(request)
    return await session_machine.session_history(db, _target_student(user, student_id), case_id)


@router.get("/cases/{case_id}/active")
async def active_session(case_id: int, request: Request, student_id: Optional[int] = None, db=Depends(get_db)):
    user = await get_current_user(request)
    session = await session_machine.active_session(db, _target_student(user, student_id), case_id)
    return {"has_active_session": session is not None, "session": session}


@router.get("/{session_id}")
async def get_session(session_id: int, request: Request, db=Depends(get_db)):
    user = await get_current_user(request)
    return await session_machine.get_session(db, session_id, owner_scope(user))


@router.post("/{session_id}/messages")
async def append_message(session_id: int, body: MessageCreate, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    session = await session_machine.append_message(db, session_id, user["id"], body.role, body.content)
    return {"session_id": session_id, "message_count": len(session["messages"])}


@router.post("/{session_id}/pause")
async def pause_session(session_id: int, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    session = await session_machine.pause_session(db, session_id, user["id"])
    return session_machine.session_summary(session)


@router.post("/{session_id}/resume")
async def resume_session(session_id: int, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    session = await session_machine.resume_session(db, session_id, user["id"])
    return session_machine.session_summary(session)


@router.post("/{session_id}/complete")
async def complete_session(
    session_id: int,
    request: Request,
    db=Depends(get_db),
    oracle=Depends(get_oracle),
    memory_store=Depends(get_memory_store),
):
    """Complete the session and score it in the same call.

    A scoring failure does not fail the request: the session stays
    COMPLETED and `assessment_error` tells the client to retry generation.
    """
    user = await require_role("student")(request)
    result = await assessment.complete_and_assess(db, oracle, memory_store, session_id, user["id"])
    return {
        "session": session_machine.session_summary(result["session"]),
        "feedback": result["feedback"],
        "assessment_error": result["assessment_error"],
    }


@router.get("/{session_id}/timer")
async def session_timer(session_id: int, request: Request, db=Depends(get_db)):
    user = await get_current_user(request)
    return await session_machine.get_timer(db, session_id, owner_scope(user))
