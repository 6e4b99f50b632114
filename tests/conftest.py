"""Shared fixtures: an in-memory database with the practicum schema and
in-process stand-ins for the scoring oracle and the continuity store."""

import os

# Settings are read at import time; these must be set before practicum loads.
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256")
os.environ["ORACLE_BACKEND"] = "http"
os.environ["MEMORY_URL"] = ""

import aiosqlite
import pytest_asyncio

from practicum.db import queries as q
from practicum.db.database import SCHEMA_PATH
from practicum.errors import UpstreamUnavailable

T0 = "2026-03-02T09:00:00+00:00"

RUBRIC = [
    {"criterion_id": "rapport", "name": "Rapport", "max_points": 25},
    {"criterion_id": "safety", "name": "Safe place installation", "max_points": 25},
    {"criterion_id": "processing", "name": "Trauma processing", "max_points": 30},
    {"criterion_id": "closure", "name": "Closure", "max_points": 20},
]

SIMULATION = {
    "patient_profile": {"name": "Claire", "age": 34, "presenting_issue": "road accident"},
    "scenario_type": "trauma_processing",
    "difficulty_level": "intermediate",
}


def oracle_result(score=82, grade="B", pass_fail="PASS", **extra):
    result = {
        "overall_score": score,
        "grade": grade,
        "pass_fail": pass_fail,
        "pass_threshold": 70,
        "criteria_scores": [
            {"criterion_id": "rapport", "points_earned": 20, "points_max": 25},
        ],
        "strengths": ["Warm opening"],
        "areas_for_improvement": ["Check SUD more often"],
        "recommendations_next_session": ["Install the safe place earlier"],
        "technical_assessment": {"rapport_building": 8, "safe_place_installation": 7},
        "communication_assessment": {"patient_engagement": 9, "clarity": 8},
    }
    result.update(extra)
    return result


class FakeOracle:
    """Records calls; returns `result` or raises `error` from generate_feedback()."""

    def __init__(self, result=None, error=None):
        self.result = result or oracle_result()
        self.error = error
        self.initialized = []
        self.ended = []
        self.feedback_requests = []

    async def initialize_session(self, case, session_type):
        self.initialized.append((case["id"], session_type))
        return f"remote-{len(self.initialized)}"

    async def generate_feedback(self, request):
        self.feedback_requests.append(request)
        if self.error is not None:
            raise self.error
        return dict(self.result)

    async def end_session(self, handle, session_type):
        self.ended.append(handle)

    async def close(self):
        pass


class FakeMemoryStore:
    def __init__(self, memory=None, fail_writes=False):
        self.memory = memory
        self.fail_writes = fail_writes
        self.recorded = []

    async def get_memory(self, student_id, internship_id):
        return self.memory

    async def record_session(self, payload):
        if self.fail_writes:
            raise UpstreamUnavailable("Memory store unreachable")
        self.recorded.append(payload)
        return True

    async def close(self):
        pass


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.executescript(SCHEMA_PATH.read_text())
    await conn.commit()
    yield conn
    await conn.close()


async def make_case(db, **overrides):
    fields = {
        "title": "Road accident, first contact",
        "internship_id": 1,
        "step": 1,
        "sequence_in_step": 1,
        "patient_base_id": "claire",
        "pass_threshold": 70,
        "session_config": {"session_duration_minutes": 60},
        "patient_simulation_config": SIMULATION,
        "assessment_criteria": RUBRIC,
        "literature_references": [{"title": "Shapiro, EMDR (3rd ed.)", "type": "book"}],
    }
    fields.update(overrides)
    return await q.create_case(db, **fields)
