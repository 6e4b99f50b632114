from typing import Optional
from fastapi import APIRouter, Depends, Request
from practicum.db.database import get_db
from practicum.models.internship import LedgerStatusUpdate
from practicum.routes.auth import get_current_user, require_staff, is_staff
from practicum.services import attempt_ledger

router = APIRouter(prefix="/api/internship/attempts", tags=["attempts"])


def _student_for(user: dict, student_id: Optional[int]) -> int:
    if is_staff(user) and student_id is not None:
        return student_id
    return user["id"]


@router.get("/cases/{case_id}")
async def case_history(case_id: int, request: Request, student_id: Optional[int] = None, db=Depends(get_db)):
    user = await get_current_user(request)
    return await attempt_ledger.get_case_history(db, _student_for(user, student_id), case_id)


@router.get("/statistics")
async def student_statistics(
    request: Request,
    student_id: Optional[int] = None,
    internship_id: Optional[int] = None,
    db=Depends(get_db),
):
    user = await get_current_user(request)
    return await attempt_ledger.get_student_statistics(db, _student_for(user, student_id), internship_id)


@router.get("/patients/{patient_base_id}/progression")
async def patient_progression(
    patient_base_id: str, request: Request, student_id: Optional[int] = None, db=Depends(get_db)
):
    user = await get_current_user(request)
    return await attempt_ledger.get_patient_progression(db, _student_for(user, student_id), patient_base_id)


@router.put("/students/{student_id}/cases/{case_id}/status")
async def update_case_status(
    student_id: int, case_id: int, body: LedgerStatusUpdate, request: Request, db=Depends(get_db)
):
    await require_staff(request)
    return await attempt_ledger.update_status(db, student_id, case_id, body.status)
