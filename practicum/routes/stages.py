import logging
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Path, Request
from practicum.db.database import get_db
from practicum.errors import UpstreamUnavailable
from practicum.models.internship import StageUpdate, StageValidation, ThresholdsUpdate
from practicum.routes.auth import require_staff, require_student_owner
from practicum.services import stage_progress
from practicum.services.memory_client import get_memory_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internship/stages", tags=["stages"])

StageNumber = Annotated[int, Path(ge=1, le=3)]


@router.get("/{internship_id}/dashboard")
async def dashboard(
    internship_id: int,
    request: Request,
    stage_number: Optional[int] = None,
    stage_status: Optional[str] = None,
    min_score: Optional[float] = None,
    max_score: Optional[float] = None,
    only_completed: bool = False,
    db=Depends(get_db),
):
    await require_staff(request)
    return await stage_progress.get_dashboard(
        db,
        internship_id,
        stage_number=stage_number,
        stage_status=stage_status,
        min_score=min_score,
        max_score=max_score,
        only_completed=only_completed,
    )


@router.get("/{internship_id}/export")
async def export(internship_id: int, request: Request, detailed: bool = False, db=Depends(get_db)):
    await require_staff(request)
    return await stage_progress.export_rows(db, internship_id, detailed=detailed)


@router.get("/{internship_id}/students/{student_id}")
async def student_progress(internship_id: int, student_id: int, request: Request, db=Depends(get_db)):
    await require_student_owner(request, student_id)
    return await stage_progress.get_or_create(db, student_id, internship_id)


@router.get("/{internship_id}/students/{student_id}/detail")
async def student_detail(
    internship_id: int,
    student_id: int,
    request: Request,
    db=Depends(get_db),
    memory_store=Depends(get_memory_store),
):
    await require_student_owner(request, student_id)
    try:
        memory = await memory_store.get_memory(student_id, internship_id)
    except UpstreamUnavailable as e:
        logger.warning(f"Continuity memory unavailable for student {student_id}: {e.detail}")
        memory = None
    return await stage_progress.get_student_detail(db, student_id, internship_id, memory)


@router.put("/{internship_id}/students/{student_id}/stages/{stage_number}")
async def update_stage(
    internship_id: int,
    student_id: int,
    stage_number: StageNumber,
    body: StageUpdate,
    request: Request,
    db=Depends(get_db),
):
    await require_staff(request)
    return await stage_progress.update_stage(
        db, student_id, internship_id, stage_number, **body.model_dump(exclude_none=True)
    )


@router.post("/{internship_id}/students/{student_id}/stages/{stage_number}/validate")
async def validate_stage(
    internship_id: int,
    student_id: int,
    stage_number: StageNumber,
    body: StageValidation,
    request: Request,
    db=Depends(get_db),
):
    await require_staff(request)
    return await stage_progress.validate_stage(
        db,
        student_id,
        internship_id,
        stage_number,
        is_validated=body.is_validated,
        validation_notes=body.validation_notes,
        edited_score=body.edited_score,
        needs_improvement_areas=body.needs_improvement_areas,
    )


@router.put("/{internship_id}/students/{student_id}/thresholds")
async def update_thresholds(
    internship_id: int, student_id: int, body: ThresholdsUpdate, request: Request, db=Depends(get_db)
):
    await require_staff(request)
    thresholds = await stage_progress.update_thresholds(
        db, student_id, internship_id, **body.model_dump(exclude_none=True)
    )
    return {"student_id": student_id, "internship_id": internship_id, "thresholds": thresholds}
