"""HTTP-level tests: auth, error rendering and the main student/professor flow."""

import asyncio

import aiosqlite
import pytest
from fastapi.testclient import TestClient

from conftest import FakeMemoryStore, FakeOracle, make_case
from practicum.db.database import SCHEMA_PATH, get_db
from practicum.routes.auth import create_token
from practicum.server import app
from practicum.services.memory_client import get_memory_store
from practicum.services.oracle_client import get_oracle

STUDENT = 7
PROFESSOR = 900


def _auth(user_id, role):
    return {"Authorization": f"Bearer {create_token(user_id, role)}"}


STUDENT_HEADERS = _auth(STUDENT, "student")
PROFESSOR_HEADERS = _auth(PROFESSOR, "professor")


@pytest.fixture
def case_id(tmp_path):
    db_path = tmp_path / "practicum.db"

    async def seed():
        async with aiosqlite.connect(db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.executescript(SCHEMA_PATH.read_text())
            return await make_case(conn)

    seeded = asyncio.run(seed())

    async def override_db():
        conn = await aiosqlite.connect(db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    oracle = FakeOracle()
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_oracle] = lambda: oracle
    app.dependency_overrides[get_memory_store] = lambda: FakeMemoryStore()
    yield seeded
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


class TestAuth:

    def test_health_is_public(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_api_requires_token(self, client, case_id):
        response = client.get("/api/internship/attempts/statistics")
        assert response.status_code == 401

    def test_invalid_token(self, client, case_id):
        response = client.get("/api/internship/attempts/statistics", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_professor_only_endpoint(self, client, case_id):
        response = client.get("/api/internship/feedback/pending", headers=STUDENT_HEADERS)
        assert response.status_code == 403


class TestSessionFlow:

    def _start(self, client, case_id):
        response = client.post(
            "/api/internship/sessions",
            json={"case_id": case_id, "session_type": "patient_interview"},
            headers=STUDENT_HEADERS,
        )
        assert response.status_code == 200
        return response.json()["session"]["id"]

    def test_domain_errors_are_rendered(self, client, case_id):
        session_id = self._start(client, case_id)
        response = client.post(f"/api/internship/sessions/{session_id}/resume", headers=STUDENT_HEADERS)
        assert response.status_code == 409
        body = response.json()
        assert body["category"] == "invalid_state"
        assert body["fields"] == {"current_state": "active", "requested": "resume"}

        missing = client.get("/api/internship/sessions/9999", headers=STUDENT_HEADERS)
        assert missing.status_code == 404
        assert missing.json()["category"] == "not_found"

    def test_full_flow(self, client, case_id):
        session_id = self._start(client, case_id)
        again = client.post(
            "/api/internship/sessions", json={"case_id": case_id}, headers=STUDENT_HEADERS
        ).json()
        assert again["already_existed"] is True

        message = client.post(
            f"/api/internship/sessions/{session_id}/messages",
            json={"role": "student", "content": "Let's install your safe place"},
            headers=STUDENT_HEADERS,
        )
        assert message.json()["message_count"] == 1

        assert client.post(f"/api/internship/sessions/{session_id}/pause", headers=STUDENT_HEADERS).json()["status"] == "paused"
        assert client.post(f"/api/internship/sessions/{session_id}/resume", headers=STUDENT_HEADERS).json()["status"] == "active"
        timer = client.get(f"/api/internship/sessions/{session_id}/timer", headers=STUDENT_HEADERS).json()
        assert timer["pause_count"] == 1

        completed = client.post(f"/api/internship/sessions/{session_id}/complete", headers=STUDENT_HEADERS).json()
        assert completed["session"]["status"] == "pending_validation"
        assert completed["assessment_error"] is None
        feedback_id = completed["feedback"]["id"]

        regenerated = client.post(
            f"/api/internship/feedback/sessions/{session_id}/generate", headers=STUDENT_HEADERS
        ).json()
        assert regenerated["already_existed"] is True
        assert regenerated["feedback"]["id"] == feedback_id

        pending = client.get("/api/internship/feedback/pending", headers=PROFESSOR_HEADERS).json()
        assert pending["pagination_data"]["total"] == 1

        out_of_range = client.post(
            f"/api/internship/feedback/{feedback_id}/validate",
            json={"is_approved": True, "edited_score": 150},
            headers=PROFESSOR_HEADERS,
        )
        assert out_of_range.status_code == 422

        student_validate = client.post(
            f"/api/internship/feedback/{feedback_id}/validate",
            json={"is_approved": True},
            headers=STUDENT_HEADERS,
        )
        assert student_validate.status_code == 403

        validated = client.post(
            f"/api/internship/feedback/{feedback_id}/validate",
            json={"is_approved": True, "edited_score": 90},
            headers=PROFESSOR_HEADERS,
        )
        assert validated.status_code == 200
        assert validated.json()["status"] == "validated"

        progress = client.get(f"/api/internship/stages/1/students/{STUDENT}", headers=STUDENT_HEADERS).json()
        assert progress["overall_score"] == 90

        detail = client.get(f"/api/internship/stages/1/students/{STUDENT}/detail", headers=STUDENT_HEADERS).json()
        assert detail["timeline"][0]["is_validated"] is True
        assert detail["timeline"][0]["score"] == 90

        history = client.get(f"/api/internship/attempts/cases/{case_id}", headers=STUDENT_HEADERS).json()
        assert history["total_attempts"] == 1
        assert history["best_score"] == 82

        reviewed = client.get(f"/api/internship/feedback/cases/{case_id}", headers=STUDENT_HEADERS).json()
        assert reviewed["id"] == feedback_id


class TestStages:

    def test_other_students_progress_is_forbidden(self, client, case_id):
        response = client.get(f"/api/internship/stages/1/students/{STUDENT + 1}", headers=STUDENT_HEADERS)
        assert response.status_code == 403

    def test_professor_edits_and_reports(self, client, case_id):
        base = f"/api/internship/stages/1/students/{STUDENT}"
        updated = client.put(f"{base}/stages/1", json={"status": "completed", "score": 70}, headers=PROFESSOR_HEADERS)
        assert updated.status_code == 200
        assert updated.json()["overall_progress_percentage"] == 33.3

        bad_stage = client.put(f"{base}/stages/4", json={"score": 70}, headers=PROFESSOR_HEADERS)
        assert bad_stage.status_code == 422

        thresholds = client.put(f"{base}/thresholds", json={"minimum_score_to_pass": 65}, headers=PROFESSOR_HEADERS)
        assert thresholds.json()["thresholds"]["minimum_score_to_pass"] == 65

        dashboard = client.get("/api/internship/stages/1/dashboard", headers=PROFESSOR_HEADERS).json()
        assert dashboard["statistics"]["total_students"] == 1

        export = client.get("/api/internship/stages/1/export?detailed=true", headers=PROFESSOR_HEADERS).json()
        assert export["rows"][0]["stage_1_status"] == "completed"
