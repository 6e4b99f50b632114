"""
stage_progress.py - Three-stage curriculum progress per (student, internship)

Provides:
- auto_update() - fold an assessed session into its classified stage
- rescore_stage() - replace a stage score (professor override) and recalc
- update_stage() / validate_stage() / update_thresholds() - professor edits
- recalc_overall() - derived figures, recomputed after every mutation
- get_progress() / get_dashboard() / get_student_detail() / export_rows()

Each stage sub-record:
    status, started_at, completed_at, validated_at, score, sessions_count,
    case_id, metrics, validation_notes, needs_improvement_areas
"""

import math
import logging
from typing import Any, Dict, List, Optional

from practicum.db import queries as q
from practicum.db.database import is_unique_violation
from practicum.errors import Conflict, NotFound, ValidationFailure
from practicum.services import stage_classifier
from practicum.services.memory_client import patient_memory

logger = logging.getLogger(__name__)

STAGE_NOT_STARTED = "not_started"
STAGE_IN_PROGRESS = "in_progress"
STAGE_COMPLETED = "completed"
STAGE_VALIDATED = "validated"
STAGE_NEEDS_REVISION = "needs_revision"
STAGE_STATUSES = (STAGE_NOT_STARTED, STAGE_IN_PROGRESS, STAGE_COMPLETED, STAGE_VALIDATED, STAGE_NEEDS_REVISION)
DONE_STATUSES = (STAGE_COMPLETED, STAGE_VALIDATED)

STAGE_NUMBERS = (1, 2, 3)

_CAS_ATTEMPTS = 5

STAGE_METRICS = {
    1: ("rapport_building", "safe_place_installation", "patient_engagement", "communication_clarity"),
    2: (
        "trauma_target_identification",
        "bilateral_stimulation_technique",
        "sud_tracking",
        "pacing_and_timing",
        "initial_sud",
        "final_sud",
    ),
    3: (
        "voc_assessment",
        "closure_technique",
        "future_template",
        "integration_quality",
        "initial_voc",
        "final_voc",
    ),
}

# metric name → (assessment section, key in that section)
_ASSESSMENT_SOURCES = {
    1: {
        "rapport_building": ("technical_assessment", "rapport_building"),
        "safe_place_installation": ("technical_assessment", "safe_place_installation"),
        "patient_engagement": ("communication_assessment", "patient_engagement"),
        "communication_clarity": ("communication_assessment", "clarity"),
    },
    2: {
        "trauma_target_identification": ("technical_assessment", "trauma_target_identification"),
        "bilateral_stimulation_technique": ("technical_assessment", "bilateral_stimulation"),
        "sud_tracking": ("technical_assessment", "sud_tracking"),
        "pacing_and_timing": ("technical_assessment", "pacing"),
    },
    3: {
        "voc_assessment": ("technical_assessment", "voc_assessment"),
        "closure_technique": ("technical_assessment", "closure"),
        "future_template": ("technical_assessment", "future_template"),
        "integration_quality": ("technical_assessment", "integration"),
    },
}

DEFAULT_THRESHOLDS = {
    "minimum_score_to_pass": 60,
    "minimum_sessions_per_stage": 1,
    "require_professor_validation": True,
}


def new_stage(stage_number: int) -> Dict[str, Any]:
    return {
        "status": STAGE_NOT_STARTED,
        "started_at": None,
        "completed_at": None,
        "validated_at": None,
        "score": None,
        "sessions_count": 0,
        "case_id": None,
        "metrics": {name: None for name in STAGE_METRICS[stage_number]},
        "validation_notes": None,
        "needs_improvement_areas": [],
    }


def _stage_key(stage_number: int) -> str:
    if stage_number not in STAGE_NUMBERS:
        raise ValidationFailure(f"Stage must be 1, 2 or 3, got {stage_number}", {"stage_number": "invalid"})
    return f"stage_{stage_number}"


def progress_percentage(done_stages: int) -> float:
    """0, 33.3, 66.6 or 100 (truncated to one decimal)."""
    return math.floor(done_stages / len(STAGE_NUMBERS) * 1000) / 10


def recalc_overall(record: Dict[str, Any], now: str) -> Dict[str, Any]:
    """Recompute the record-level figures from its stages, in place."""
    stages = [record[f"stage_{n}"] for n in STAGE_NUMBERS]
    done = sum(1 for s in stages if s["status"] in DONE_STATUSES)
    scores = [s["score"] for s in stages if s["score"] is not None]

    record["overall_progress_percentage"] = progress_percentage(done)
    record["overall_score"] = sum(scores) / len(scores) if scores else None
    record["all_stages_completed"] = done == len(STAGE_NUMBERS)
    if record["all_stages_completed"] and not record.get("internship_completed_at"):
        record["internship_completed_at"] = now
    return record


def extract_metrics(
    stage_number: int, ai_feedback: Dict[str, Any], memory: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Stage metrics found in an assessment and the continuity memory.

    Only values actually present are returned, so earlier readings survive.
    """
    found = {}
    for metric, (section, key) in _ASSESSMENT_SOURCES[stage_number].items():
        value = (ai_feedback.get(section) or {}).get(key)
        if value is not None:
            found[metric] = value

    pm = patient_memory(memory)
    if stage_number == 2:
        targets = pm.get("trauma_targets") or []
        if targets:
            if targets[0].get("initial_sud") is not None:
                found["initial_sud"] = targets[0]["initial_sud"]
            if targets[-1].get("current_sud") is not None:
                found["final_sud"] = targets[-1]["current_sud"]
    elif stage_number == 3:
        voc_scores = pm.get("voc_scores") or []
        if voc_scores:
            found["initial_voc"] = voc_scores[0]
            found["final_voc"] = voc_scores[-1]
    return found


def effective_score(feedback: Dict[str, Any]) -> Optional[float]:
    """Professor-edited score when present, else the AI score."""
    edited = (feedback.get("professor_feedback") or {}).get("edited_score")
    if edited is not None:
        return edited
    return (feedback.get("ai_feedback") or {}).get("overall_score")


async def get_or_create(db, student_id: int, internship_id: int) -> Dict[str, Any]:
    record = await q.get_stage_progress(db, student_id, internship_id)
    if record:
        return record
    try:
        await q.create_stage_progress(
            db,
            student_id,
            internship_id,
            stages={f"stage_{n}": new_stage(n) for n in STAGE_NUMBERS},
            thresholds=dict(DEFAULT_THRESHOLDS),
        )
    except Exception as e:
        if not is_unique_violation(e):
            raise
    return await q.get_stage_progress(db, student_id, internship_id)


async def _load(db, student_id: int, internship_id: int) -> Dict[str, Any]:
    record = await q.get_stage_progress(db, student_id, internship_id)
    if not record:
        raise NotFound("Stage progress not found")
    return record


async def _mutate(db, student_id: int, internship_id: int, apply, now: str, create: bool = False):
    """Read the record, apply(record), recalculate and write it back.

    The write is compare-and-set on the record version; a lost race
    re-reads and re-applies. Returns (record, whatever apply returned).
    """
    load = get_or_create if create else _load
    for _ in range(_CAS_ATTEMPTS):
        record = await load(db, student_id, internship_id)
        result = apply(record)
        recalc_overall(record, now)
        if await q.save_stage_progress(db, record):
            record["version"] += 1
            return record, result
        logger.debug(f"Stage progress for student {student_id} changed underneath, retrying")
    raise Conflict(f"Stage progress for student {student_id} is being modified concurrently, retry the request")


async def auto_update(
    db,
    student_id: int,
    internship_id: int,
    case_id: int,
    session: Dict[str, Any],
    feedback: Dict[str, Any],
    memory: Optional[Dict[str, Any]] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Classify the session and fold it into that stage.

    Returns:
        dict with keys: stage_number, progress
    """
    now = now or q.utc_now()
    stage_number = stage_classifier.classify(session.get("messages") or [], memory)
    key = _stage_key(stage_number)

    def apply(record):
        stage = record[key]
        if stage["status"] == STAGE_NOT_STARTED:
            stage["status"] = STAGE_IN_PROGRESS
            stage["started_at"] = now
        stage["sessions_count"] += 1
        record["total_sessions"] += 1
        if not stage.get("case_id"):
            stage["case_id"] = case_id

        if feedback.get("ai_feedback"):
            stage["score"] = effective_score(feedback)
            stage["metrics"] = {**stage.get("metrics", {}), **extract_metrics(stage_number, feedback["ai_feedback"], memory)}

        _maybe_complete(stage, record["thresholds"], now)

    record, _ = await _mutate(db, student_id, internship_id, apply, now, create=True)
    if feedback.get("id"):
        await q.update_feedback(db, feedback["id"], {"stage_number": stage_number})
    logger.info(f"Auto-updated stage {stage_number} progress for student {student_id}")
    return {"stage_number": stage_number, "progress": record}


def _maybe_complete(stage: Dict[str, Any], thresholds: Dict[str, Any], now: str) -> None:
    """Complete an in-progress stage automatically when no professor sign-off is required."""
    thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    if thresholds["require_professor_validation"] or stage["status"] != STAGE_IN_PROGRESS:
        return
    if stage["score"] is None:
        return
    if (
        stage["sessions_count"] >= thresholds["minimum_sessions_per_stage"]
        and stage["score"] >= thresholds["minimum_score_to_pass"]
    ):
        stage["status"] = STAGE_COMPLETED
        stage["completed_at"] = now


async def rescore_stage(
    db, student_id: int, internship_id: int, stage_number: int, score: float, now: Optional[str] = None
) -> Dict[str, Any]:
    now = now or q.utc_now()
    key = _stage_key(stage_number)

    def apply(record):
        record[key]["score"] = score

    record, _ = await _mutate(db, student_id, internship_id, apply, now)
    logger.info(f"Rescored stage {stage_number} for student {student_id} to {score}")
    return record


async def update_stage(
    db,
    student_id: int,
    internship_id: int,
    stage_number: int,
    status: Optional[str] = None,
    score: Optional[float] = None,
    case_id: Optional[int] = None,
    validation_notes: Optional[str] = None,
    needs_improvement_areas: Optional[List[str]] = None,
    metrics: Optional[Dict[str, Any]] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Professor edit of one stage. Status changes stamp their timestamp."""
    now = now or q.utc_now()
    key = _stage_key(stage_number)
    if status is not None and status not in STAGE_STATUSES:
        raise ValidationFailure(f"Unknown stage status '{status}'", {"status": "invalid"})

    def apply(record):
        stage = record[key]
        if status is not None:
            stage["status"] = status
            if status == STAGE_IN_PROGRESS and not stage.get("started_at"):
                stage["started_at"] = now
            elif status == STAGE_COMPLETED:
                stage["completed_at"] = now
            elif status == STAGE_VALIDATED:
                stage["validated_at"] = now
        if score is not None:
            stage["score"] = score
        if case_id is not None:
            stage["case_id"] = case_id
        if validation_notes is not None:
            stage["validation_notes"] = validation_notes
        if needs_improvement_areas is not None:
            stage["needs_improvement_areas"] = needs_improvement_areas
        if metrics:
            stage["metrics"] = {**stage.get("metrics", {}), **metrics}

    record, _ = await _mutate(db, student_id, internship_id, apply, now, create=True)
    return record


async def validate_stage(
    db,
    student_id: int,
    internship_id: int,
    stage_number: int,
    is_validated: bool,
    validation_notes: Optional[str] = None,
    edited_score: Optional[float] = None,
    needs_improvement_areas: Optional[List[str]] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Professor sign-off: VALIDATED or NEEDS_REVISION, optionally overriding the score."""
    now = now or q.utc_now()
    key = _stage_key(stage_number)
    new_status = STAGE_VALIDATED if is_validated else STAGE_NEEDS_REVISION

    def apply(record):
        stage = record[key]
        stage["status"] = new_status
        stage["validated_at"] = now
        if validation_notes is not None:
            stage["validation_notes"] = validation_notes
        if edited_score is not None:
            stage["score"] = edited_score
        if needs_improvement_areas is not None:
            stage["needs_improvement_areas"] = needs_improvement_areas

    record, _ = await _mutate(db, student_id, internship_id, apply, now)
    logger.info(f"Stage {stage_number} for student {student_id} marked {new_status}")
    return record


async def update_thresholds(
    db,
    student_id: int,
    internship_id: int,
    minimum_score_to_pass: Optional[float] = None,
    minimum_sessions_per_stage: Optional[int] = None,
    require_professor_validation: Optional[bool] = None,
) -> Dict[str, Any]:
    def apply(record):
        thresholds = {**DEFAULT_THRESHOLDS, **(record.get("thresholds") or {})}
        if minimum_score_to_pass is not None:
            thresholds["minimum_score_to_pass"] = minimum_score_to_pass
        if minimum_sessions_per_stage is not None:
            thresholds["minimum_sessions_per_stage"] = minimum_sessions_per_stage
        if require_professor_validation is not None:
            thresholds["require_professor_validation"] = require_professor_validation
        record["thresholds"] = thresholds
        return thresholds

    _, thresholds = await _mutate(db, student_id, internship_id, apply, q.utc_now())
    return thresholds


async def get_progress(db, student_id: int, internship_id: int) -> Dict[str, Any]:
    return await _load(db, student_id, internship_id)


def _student_row(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "student_id": record["student_id"],
        "stage_1": record["stage_1"],
        "stage_2": record["stage_2"],
        "stage_3": record["stage_3"],
        "overall_progress": record["overall_progress_percentage"],
        "overall_score": record["overall_score"],
        "total_sessions": record["total_sessions"],
        "all_stages_completed": record["all_stages_completed"],
        "completed_at": record["internship_completed_at"],
    }


async def get_dashboard(
    db,
    internship_id: int,
    stage_number: Optional[int] = None,
    stage_status: Optional[str] = None,
    min_score: Optional[float] = None,
    max_score: Optional[float] = None,
    only_completed: bool = False,
) -> Dict[str, Any]:
    records = await q.list_stage_progress(db, internship_id)

    if stage_number is not None and stage_status:
        key = _stage_key(stage_number)
        records = [r for r in records if r[key]["status"] == stage_status]
    if min_score is not None:
        records = [r for r in records if r["overall_score"] is not None and r["overall_score"] >= min_score]
    if max_score is not None:
        records = [r for r in records if r["overall_score"] is not None and r["overall_score"] <= max_score]
    if only_completed:
        records = [r for r in records if r["all_stages_completed"]]

    students = [_student_row(r) for r in records]
    count = len(students) or 1

    def completion_rate(n: int) -> float:
        done = sum(1 for s in students if s[f"stage_{n}"]["status"] in DONE_STATUSES)
        return round(done / count * 100, 1)

    statistics = {
        "total_students": len(students),
        "students_completed": sum(1 for s in students if s["all_stages_completed"]),
        "students_in_progress": sum(
            1 for s in students
            if not s["all_stages_completed"] and s["stage_1"]["status"] != STAGE_NOT_STARTED
        ),
        "students_not_started": sum(1 for s in students if s["stage_1"]["status"] == STAGE_NOT_STARTED),
        "average_score": round(sum(s["overall_score"] or 0 for s in students) / count, 1),
        "average_sessions": round(sum(s["total_sessions"] for s in students) / count, 1),
    }
    for n in STAGE_NUMBERS:
        statistics[f"stage_{n}_completion_rate"] = completion_rate(n)

    return {"internship_id": internship_id, "students": students, "statistics": statistics}


async def get_student_detail(
    db, student_id: int, internship_id: int, memory: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Stage progress plus a session timeline and SUD/VoC evolution."""
    record = await _load(db, student_id, internship_id)
    sessions = await q.list_sessions_for_internship(db, student_id, internship_id)
    feedback_by_session = await q.list_feedback_for_sessions(db, [s["id"] for s in sessions])

    timeline = []
    for s in sessions:
        fb = feedback_by_session.get(s["id"])
        timeline.append({
            "session_id": s["id"],
            "case_id": s["case_id"],
            "session_number": s["session_number"],
            "session_type": s["session_type"],
            "status": s["status"],
            "started_at": s["started_at"],
            "duration_seconds": s["total_active_time_seconds"],
            "score": effective_score(fb) if fb else None,
            "feedback_status": fb["status"] if fb else None,
            "is_validated": bool(fb and (fb.get("professor_feedback") or {}).get("is_approved")),
            "stage_number": fb.get("stage_number") if fb else None,
        })

    pm = patient_memory(memory)
    sud_evolution = [
        {
            "timestamp": t.get("identified_at"),
            "initial_sud": t.get("initial_sud"),
            "current_sud": t.get("current_sud"),
            "target_description": (t.get("description") or "")[:100] or None,
        }
        for t in pm.get("trauma_targets") or []
    ]

    return {
        "student_id": student_id,
        "internship_id": internship_id,
        "stage_progress": _student_row(record),
        "timeline": timeline,
        "sud_evolution": sud_evolution,
        "voc_evolution": pm.get("voc_scores") or [],
        "techniques_learned": pm.get("techniques_learned") or [],
        "thresholds": record["thresholds"],
    }


SIMPLE_EXPORT_COLUMNS = [
    "student_id",
    "stage_1_status", "stage_1_score",
    "stage_2_status", "stage_2_score",
    "stage_3_status", "stage_3_score",
    "overall_progress", "overall_score", "total_sessions",
]

DETAILED_EXPORT_COLUMNS = [
    "student_id",
    "stage_1_status", "stage_1_score", "stage_1_sessions",
    "stage_1_rapport_building", "stage_1_safe_place_installation",
    "stage_2_status", "stage_2_score", "stage_2_sessions",
    "stage_2_trauma_target_identification", "stage_2_bilateral_stimulation_technique",
    "stage_2_initial_sud", "stage_2_final_sud",
    "stage_3_status", "stage_3_score", "stage_3_sessions",
    "stage_3_voc_assessment", "stage_3_closure_technique",
    "stage_3_initial_voc", "stage_3_final_voc",
    "overall_progress", "overall_score", "total_sessions",
    "all_stages_completed", "completed_at",
]


def _flatten(record: Dict[str, Any]) -> Dict[str, Any]:
    flat = {
        "student_id": record["student_id"],
        "overall_progress": record["overall_progress_percentage"],
        "overall_score": record["overall_score"],
        "total_sessions": record["total_sessions"],
        "all_stages_completed": record["all_stages_completed"],
        "completed_at": record["internship_completed_at"],
    }
    for n in STAGE_NUMBERS:
        stage = record[f"stage_{n}"]
        flat[f"stage_{n}_status"] = stage["status"]
        flat[f"stage_{n}_score"] = stage["score"]
        flat[f"stage_{n}_sessions"] = stage["sessions_count"]
        for metric, value in (stage.get("metrics") or {}).items():
            flat[f"stage_{n}_{metric}"] = value
    return flat


async def export_rows(db, internship_id: int, detailed: bool = False) -> Dict[str, Any]:
    """Tabular stage progress for an internship; rendering is up to the caller."""
    columns = DETAILED_EXPORT_COLUMNS if detailed else SIMPLE_EXPORT_COLUMNS
    records = await q.list_stage_progress(db, internship_id)
    rows = []
    for record in records:
        flat = _flatten(record)
        rows.append({col: flat.get(col) for col in columns})
    return {"columns": columns, "rows": rows}
