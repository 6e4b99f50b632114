"""Tests for professor validation and revision of assessments."""

import pytest

from conftest import FakeMemoryStore, FakeOracle, T0, make_case, oracle_result
from practicum.db import queries as q
from practicum.errors import NotFound, ValidationFailure
from practicum.services import assessment, feedback_workflow as fw, session_machine as sm, stage_progress

STUDENT = 7
PROFESSOR = 900
INTERNSHIP = 1


async def _assessed(db, score=82):
    case_id = await make_case(db)
    oracle = FakeOracle(oracle_result(score=score))
    created = await sm.create_session(db, oracle, STUDENT, case_id, "patient_interview", now=T0)
    session_id = created["session"]["id"]
    await sm.append_message(db, session_id, STUDENT, "student", "Let's find your safe place")
    await sm.complete_session(db, oracle, session_id, STUDENT)
    result = await assessment.generate_assessment(db, session_id, oracle, FakeMemoryStore())
    return case_id, session_id, result["feedback"]


class TestValidate:

    @pytest.mark.asyncio
    async def test_edited_score_rescores_stage(self, db):
        _, session_id, feedback = await _assessed(db, score=82)
        assert (await stage_progress.get_progress(db, STUDENT, INTERNSHIP))["overall_score"] == 82

        validated = await fw.validate_feedback(
            db, feedback["id"], PROFESSOR, is_approved=True, professor_comments="Good pacing", edited_score=90
        )

        assert validated["status"] == "validated"
        assert validated["feedback_type"] == "professor_edited"
        assert validated["professor_feedback"]["validated_by"] == PROFESSOR
        assert validated["professor_feedback"]["edited_score"] == 90
        assert validated["ai_feedback"]["overall_score"] == 82
        assert [e["action"] for e in validated["audit_log"]] == ["generated", "validated"]

        progress = await stage_progress.get_progress(db, STUDENT, INTERNSHIP)
        assert progress["stage_1"]["score"] == 90
        assert progress["overall_score"] == 90
        assert (await q.get_session(db, session_id))["status"] == "validated"

    @pytest.mark.asyncio
    async def test_plain_approval_keeps_ai_score(self, db):
        _, _, feedback = await _assessed(db, score=78)
        validated = await fw.validate_feedback(db, feedback["id"], PROFESSOR, is_approved=True)
        assert validated["feedback_type"] == "professor_validated"
        assert (await stage_progress.get_progress(db, STUDENT, INTERNSHIP))["stage_1"]["score"] == 78

    @pytest.mark.asyncio
    async def test_out_of_range_score(self, db):
        _, _, feedback = await _assessed(db)
        with pytest.raises(ValidationFailure) as exc:
            await fw.validate_feedback(db, feedback["id"], PROFESSOR, is_approved=True, edited_score=120)
        assert exc.value.fields == {"edited_score": "out_of_range"}
        assert (await q.get_feedback(db, feedback["id"]))["status"] == "pending_validation"

    @pytest.mark.asyncio
    async def test_unknown_feedback(self, db):
        with pytest.raises(NotFound):
            await fw.validate_feedback(db, 404, PROFESSOR, is_approved=False)


class TestUpdate:

    @pytest.mark.asyncio
    async def test_revision_amends_fields(self, db):
        _, session_id, feedback = await _assessed(db, score=82)
        revised = await fw.update_feedback(
            db,
            feedback["id"],
            PROFESSOR,
            ai_fields={"overall_score": 74, "strengths": ["Clear structure"]},
            professor_comments="Score adjusted after review",
        )

        assert revised["status"] == "revised"
        assert revised["feedback_type"] == "professor_edited"
        assert revised["ai_feedback"]["overall_score"] == 74
        assert revised["ai_feedback"]["strengths"] == ["Clear structure"]
        assert revised["ai_feedback"]["grade"] == "B"
        assert revised["professor_feedback"]["revised_by"] == PROFESSOR
        assert revised["audit_log"][-1]["fields"] == ["overall_score", "strengths"]
        assert (await q.get_session(db, session_id))["status"] == "revised"
        assert (await stage_progress.get_progress(db, STUDENT, INTERNSHIP))["overall_score"] == 74

    @pytest.mark.asyncio
    async def test_non_editable_field(self, db):
        _, _, feedback = await _assessed(db)
        with pytest.raises(ValidationFailure):
            await fw.update_feedback(db, feedback["id"], PROFESSOR, ai_fields={"generated_at": "yesterday"})


class TestQueries:

    @pytest.mark.asyncio
    async def test_pending_list_and_reviewed_lookup(self, db):
        case_id, _, feedback = await _assessed(db)
        pending = await fw.list_pending(db, page=1, limit=10)
        assert [f["id"] for f in pending["feedbacks"]] == [feedback["id"]]
        assert pending["feedbacks"][0]["case_title"] == "Road accident, first contact"
        assert pending["pagination_data"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}

        assert await fw.get_reviewed_for_case(db, STUDENT, case_id) is None
        await fw.validate_feedback(db, feedback["id"], PROFESSOR, is_approved=True)
        reviewed = await fw.get_reviewed_for_case(db, STUDENT, case_id)
        assert reviewed["id"] == feedback["id"]
        assert (await fw.list_pending(db))["pagination_data"]["total"] == 0

    @pytest.mark.asyncio
    async def test_students_only_see_their_own_feedback(self, db):
        _, _, feedback = await _assessed(db)
        assert (await fw.get_feedback(db, feedback["id"], STUDENT))["id"] == feedback["id"]
        with pytest.raises(NotFound):
            await fw.get_feedback(db, feedback["id"], STUDENT + 1)
