"""Tests for the HTTP oracle and continuity store clients (no network)."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from practicum.errors import UpstreamUnavailable, ValidationFailure
from practicum.services.memory_client import MemoryStoreClient, patient_memory
from practicum.services.oracle_client import HttpOracleClient, GENERATE_FEEDBACK_PATH

BASE_URL = "http://oracle.test/api/v1"


def _response(status_code, method="POST", url=BASE_URL, **kwargs):
    return httpx.Response(status_code, request=httpx.Request(method, url), **kwargs)


@pytest_asyncio.fixture
async def oracle():
    client = HttpOracleClient(BASE_URL, timeout_seconds=5)
    yield client
    await client.close()


class TestHttpOracle:

    @pytest.mark.asyncio
    async def test_generate_feedback_unwraps_payload(self, oracle, monkeypatch):
        calls = []

        async def mock_post(url, json=None):
            calls.append((url, json))
            return _response(200, json={"success": True, "feedback": {"overall_score": 82, "grade": "B"}})

        monkeypatch.setattr(oracle.client, "post", mock_post)
        feedback = await oracle.generate_feedback({"case_id": "1"})

        assert feedback == {"overall_score": 82, "grade": "B"}
        assert calls == [(BASE_URL + GENERATE_FEEDBACK_PATH, {"case_id": "1"})]

    @pytest.mark.asyncio
    async def test_server_error_is_upstream_unavailable(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            return _response(503, json={"detail": "overloaded"})

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable):
            await oracle.generate_feedback({})

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            raise httpx.ReadTimeout("timed out")

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable):
            await oracle.generate_feedback({})

    @pytest.mark.asyncio
    async def test_rejection_carries_field_detail(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            return _response(422, json={"detail": [
                {"loc": ["body", "session_data", "messages"], "msg": "field required"},
            ]})

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(ValidationFailure) as exc:
            await oracle.generate_feedback({})
        assert exc.value.fields == {"session_data.messages": "field required"}

    @pytest.mark.asyncio
    async def test_reported_failure(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            return _response(200, json={"success": False, "message": "model busy"})

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable, match="model busy"):
            await oracle.generate_feedback({})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"feedback": None}, {"feedback": [1, 2]}, ["overall_score", 82]])
    async def test_unexpected_body_shape(self, oracle, monkeypatch, body):
        async def mock_post(url, json=None):
            return _response(200, json=body)

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable, match="malformed"):
            await oracle.generate_feedback({})

    @pytest.mark.asyncio
    async def test_non_json_body(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            return _response(200, content=b"<html>gateway</html>")

        monkeypatch.setattr(oracle.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable, match="malformed"):
            await oracle.generate_feedback({})

    @pytest.mark.asyncio
    async def test_initialize_session(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            assert url.endswith("/internship/patient/initialize")
            assert json["scenario_config"]["difficulty_level"] == "easy"
            return _response(200, json={"success": True, "session_id": "abc"})

        monkeypatch.setattr(oracle.client, "post", mock_post)
        case = {"id": 3, "patient_simulation_config": {"patient_profile": {}, "scenario_type": "x", "difficulty_level": "easy"}}
        assert await oracle.initialize_session(case, "patient_interview") == "abc"

    @pytest.mark.asyncio
    async def test_supervisor_session_has_no_remote_handle(self, oracle, monkeypatch):
        async def mock_post(url, json=None):
            raise AssertionError("no request expected")

        monkeypatch.setattr(oracle.client, "post", mock_post)
        assert await oracle.initialize_session({"id": 3}, "supervisor_feedback") is None


class TestMemoryStore:

    @pytest.mark.asyncio
    async def test_missing_memory_is_none(self, monkeypatch):
        store = MemoryStoreClient("http://memory.test")

        async def mock_get(url):
            return _response(404, method="GET", url=url)

        monkeypatch.setattr(store.client, "get", mock_get)
        assert await store.get_memory(7, 1) is None
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{"content": b"not json"}, {"json": ["voc_scores"]}])
    async def test_malformed_memory_document(self, monkeypatch, kwargs):
        store = MemoryStoreClient("http://memory.test")

        async def mock_get(url):
            return _response(200, method="GET", url=url, **kwargs)

        monkeypatch.setattr(store.client, "get", mock_get)
        with pytest.raises(UpstreamUnavailable, match="malformed"):
            await store.get_memory(7, 1)
        await store.close()

    @pytest.mark.asyncio
    async def test_unreachable_store(self, monkeypatch):
        store = MemoryStoreClient("http://memory.test")

        async def mock_post(url, json=None):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(store.client, "post", mock_post)
        with pytest.raises(UpstreamUnavailable):
            await store.record_session({"session_id": 1})
        await store.close()

    @pytest.mark.asyncio
    async def test_disabled_store(self):
        store = MemoryStoreClient("")
        assert await store.get_memory(7, 1) is None
        assert await store.record_session({"session_id": 1}) is False
        await store.close()

    def test_patient_memory_shapes(self):
        assert patient_memory(None) == {}
        assert patient_memory({"patient_memory": {"voc_scores": [3]}}) == {"voc_scores": [3]}
        assert patient_memory({"memory_snapshot": {"patient_memory": {"voc_scores": [5]}}}) == {"voc_scores": [5]}


class TestLlmOracle:

    @pytest.mark.asyncio
    async def test_scores_through_ai_chat(self):
        from practicum.services.oracle_client import LlmOracleClient

        request = {
            "case_title": "First contact",
            "pass_threshold": 70,
            "session_data": {"messages": [{"role": "student", "content": "Hello"}], "session_duration_minutes": 30},
            "assessment_criteria": [{"criterion_id": "rapport", "name": "Rapport", "max_points": 100}],
            "patient_profile": {"name": "Claire"},
        }
        mock_chat = AsyncMock(return_value='{"overall_score": 77, "grade": "C"}')
        with patch("practicum.services.ai_client.ai_chat", mock_chat):
            result = await LlmOracleClient(timeout_seconds=5).generate_feedback(request)

        assert result == {"overall_score": 77, "grade": "C"}
        kwargs = mock_chat.call_args.kwargs
        assert kwargs["use_case"] == "assessment"
        assert kwargs["json_mode"] is True
        user_message = kwargs["messages"][1]["content"]
        assert "STUDENT: Hello" in user_message
        assert "rapport: Rapport (100 pts)" in user_message

    @pytest.mark.asyncio
    async def test_malformed_model_output(self):
        from practicum.services.oracle_client import LlmOracleClient

        with patch("practicum.services.ai_client.ai_chat", AsyncMock(return_value="not json")):
            with pytest.raises(UpstreamUnavailable):
                await LlmOracleClient().generate_feedback({})
