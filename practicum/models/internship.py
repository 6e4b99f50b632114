from typing import Literal, Optional

from pydantic import BaseModel, Field

SessionType = Literal["patient_interview", "therapist_consultation", "supervisor_feedback"]
MessageRole = Literal["student", "patient", "therapist", "supervisor"]
StageStatus = Literal["not_started", "in_progress", "completed", "validated", "needs_revision"]
LedgerStatus = Literal["not_started", "in_progress", "passed", "needs_retry"]


class SessionCreate(BaseModel):
    case_id: int
    session_type: SessionType = "patient_interview"


class MessageCreate(BaseModel):
    role: MessageRole = "student"
    content: str = Field(min_length=1)


class FeedbackValidation(BaseModel):
    is_approved: bool
    professor_comments: Optional[str] = None
    edited_score: Optional[float] = Field(default=None, ge=0, le=100)


class FeedbackUpdate(BaseModel):
    overall_score: Optional[float] = Field(default=None, ge=0, le=100)
    grade: Optional[Literal["A", "B", "C", "D", "F"]] = None
    pass_fail: Optional[Literal["PASS", "FAIL"]] = None
    criteria_scores: Optional[list[dict]] = None
    strengths: Optional[list[str]] = None
    areas_for_improvement: Optional[list[str]] = None
    recommendations_next_session: Optional[list[str]] = None
    evolution_vs_previous_attempts: Optional[str] = None
    literature_adherence: Optional[str] = None
    clinical_reasoning: Optional[str] = None
    professor_comments: Optional[str] = None


class LedgerStatusUpdate(BaseModel):
    status: LedgerStatus


class StageUpdate(BaseModel):
    status: Optional[StageStatus] = None
    score: Optional[float] = Field(default=None, ge=0, le=100)
    case_id: Optional[int] = None
    validation_notes: Optional[str] = None
    needs_improvement_areas: Optional[list[str]] = None
    metrics: Optional[dict] = None


class StageValidation(BaseModel):
    is_validated: bool
    validation_notes: Optional[str] = None
    edited_score: Optional[float] = Field(default=None, ge=0, le=100)
    needs_improvement_areas: Optional[list[str]] = None


class ThresholdsUpdate(BaseModel):
    minimum_score_to_pass: Optional[float] = Field(default=None, ge=0, le=100)
    minimum_sessions_per_stage: Optional[int] = Field(default=None, ge=1)
    require_professor_validation: Optional[bool] = None
