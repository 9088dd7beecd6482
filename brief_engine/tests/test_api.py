"""
Tests for API Contract
======================

The pipeline runner is replaced through the dependency override, so these
tests cover only the HTTP surface: health, request validation and the SSE
event stream.
"""

import json

import pytest
from fastapi.testclient import TestClient

from brief_engine import __version__
from brief_engine.api import app, format_sse, get_pipeline_runner
from brief_engine.context_store import ContextStore
from brief_engine.errors import BackendError, MalformedOutputError, SetupError
from brief_engine.pipeline import PipelineResult
from brief_engine.schemas import PipelineStage, ProgressEvent, ProgressEventKind


# =============================================================================
# Test Client
# =============================================================================

@pytest.fixture
def client():
    """Create test client"""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def brief_request():
    return {
        "legal_issues": [{
            "id": "issue_1",
            "title": "侵權行為責任",
            "our_position": "被告應負賠償責任",
            "their_position": "原告與有過失",
        }],
        "case_summary": "原告遭被告駕車撞傷",
    }


def use_runner(runner):
    app.dependency_overrides[get_pipeline_runner] = lambda: runner


def parse_sse(body: str):
    events = []
    for frame in body.split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


# =============================================================================
# Health
# =============================================================================

class TestHealthEndpoint:
    """Tests for /health endpoint"""

    def test_health_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_fields(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert isinstance(data["backends_configured"], bool)
        assert "timestamp" in data


# =============================================================================
# Generate
# =============================================================================

class TestGenerateEndpoint:
    """Tests for /briefs/generate"""

    def test_streams_runner_events(self, client, brief_request):
        seen = {}

        async def runner(request, callbacks, cancel):
            seen["issues"] = [issue.id for issue in request.legal_issues]
            seen["cancelled"] = cancel.is_set()
            await callbacks.on_event(ProgressEvent(
                kind=ProgressEventKind.STAGE_STARTED, stage=PipelineStage.CASE_ANALYSIS, message="Checking case material",
            ))
            await callbacks.on_event(ProgressEvent(kind=ProgressEventKind.DONE, message="Brief drafted: 1 sections"))
            return PipelineResult(store=ContextStore())

        use_runner(runner)
        response = client.post("/briefs/generate", json=brief_request)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        assert [e["kind"] for e in events] == ["stage_started", "done"]
        assert events[0]["stage"] == "case_analysis"
        assert seen == {"issues": ["issue_1"], "cancelled": False}

    def test_setup_error_adds_no_event(self, client, brief_request):
        async def runner(request, callbacks, cancel):
            await callbacks.on_event(ProgressEvent(
                kind=ProgressEventKind.ERROR, stage=PipelineStage.CASE_ANALYSIS, message="No legal issues supplied",
            ))
            raise SetupError("Cannot generate a brief", ["No legal issues supplied"])

        use_runner(runner)
        events = parse_sse(client.post("/briefs/generate", json=brief_request).text)
        assert [e["kind"] for e in events] == ["error"]
        assert events[0]["message"] == "No legal issues supplied"

    def test_backend_error_adds_no_event(self, client, brief_request):
        async def runner(request, callbacks, cancel):
            await callbacks.on_event(ProgressEvent(kind=ProgressEventKind.ERROR, message="HTTP 401: unauthorized"))
            raise BackendError("HTTP 401: unauthorized", 401)

        use_runner(runner)
        events = parse_sse(client.post("/briefs/generate", json=brief_request).text)
        assert [e["kind"] for e in events] == ["error"]

    def test_unexpected_engine_error_becomes_event(self, client, brief_request):
        async def runner(request, callbacks, cancel):
            await callbacks.on_event(ProgressEvent(kind=ProgressEventKind.STAGE_STARTED, stage=PipelineStage.STRATEGY))
            raise MalformedOutputError("No JSON object found")

        use_runner(runner)
        events = parse_sse(client.post("/briefs/generate", json=brief_request).text)
        assert [e["kind"] for e in events] == ["stage_started", "error"]
        assert events[1]["message"] == "No JSON object found"

    def test_crash_still_ends_with_error_event(self, client, brief_request):
        async def runner(request, callbacks, cancel):
            await callbacks.on_event(ProgressEvent(kind=ProgressEventKind.STAGE_STARTED, stage=PipelineStage.DRAFTING))
            raise RuntimeError("'NoneType' object has no attribute 'get'")

        use_runner(runner)
        events = parse_sse(client.post("/briefs/generate", json=brief_request).text)
        assert [e["kind"] for e in events] == ["stage_started", "error"]
        assert events[1]["message"] == "Internal error during brief generation"

    def test_invalid_body_rejected(self, client):
        response = client.post("/briefs/generate", json={"legal_issues": "not a list"})
        assert response.status_code == 422

    def test_format_sse(self):
        frame = format_sse(ProgressEvent(kind=ProgressEventKind.DONE, message="完成"))
        assert frame.startswith("data: {")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):])["message"] == "完成"
