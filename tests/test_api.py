"""API tests: job creation, the inbound run trigger, and the error envelope.

Error responses follow the stable envelope format:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from onstep.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from onstep.api.schemas import Envelope, ErrorBody, RunWorkflowRequest
from onstep.app import app
from onstep.service.runtime import get_runtime

HELLO = {
    "steps": [
        {
            "id": "hello",
            "type": "code",
            "code": 'def handle(input, context):\n    return "Hello world"\n',
        }
    ]
}
BAD_RESULT = {
    "steps": [{"id": "bad", "type": "code", "code": "def handle(input, context):\n    return {1}\n"}]
}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        workflows = get_runtime().workflows
        workflows.register("hello", HELLO)
        workflows.register("bad-result", BAD_RESULT)
        yield test_client


def _create_job(client, workflow_id="hello", **extra):
    response = client.post("/v1/jobs", json={"workflowId": workflow_id, "userId": "u1", **extra})
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestJobsApi:
    def test_create_job(self, client):
        data = _create_job(client)
        assert data["status"] == "pending"
        assert data["workflow_id"] == "hello"
        assert [r["status"] for r in data["results"]] == ["pending"]

    def test_run_job_completes(self, client):
        job = _create_job(client)

        response = client.post("/v1/workflow", json={"jobId": job["id"]})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["status"] == "completed"
        assert body["data"]["result"] == "Hello world"

        fetched = client.get(f"/v1/jobs/{job['id']}").json()["data"]
        assert fetched["status"] == "completed"
        assert [r["result"] for r in fetched["results"]] == ["Hello world"]

    def test_failed_run_is_reported_in_body(self, client):
        job = _create_job(client, "bad-result")

        response = client.post("/v1/workflow", json={"jobId": job["id"]})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "failed"
        assert data["reason"].startswith("InvalidResultType:")

    def test_run_unknown_job_is_404(self, client):
        response = client.post("/v1/workflow", json={"jobId": "missing"})
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_run_requires_job_id(self, client):
        response = client.post("/v1/workflow", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_invalid_cron_is_rejected(self, client):
        response = client.post(
            "/v1/jobs",
            json={"workflowId": "hello", "userId": "u1", "trigger": {"type": "scheduled", "cron": "often"}},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_trigger"

    def test_get_unknown_job_is_404(self, client):
        response = client.get("/v1/jobs/missing")
        assert response.status_code == 404

    def test_abort_pending_job(self, client):
        job = _create_job(client)

        response = client.post(f"/v1/workflow/{job['id']}/abort", json={"reason": "stopped by user"})

        assert response.status_code == 200
        assert response.json()["data"]["resolved_by"] == "primary"
        fetched = client.get(f"/v1/jobs/{job['id']}").json()["data"]
        assert fetched["status"] == "failed"
        assert fetched["results"][0]["reason"] == "stopped by user"

        again = client.post(f"/v1/workflow/{job['id']}/abort", json={"reason": "again"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "conflict"

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/v1/jobs",
            json={"workflowId": "hello", "userId": "u1"},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["job_store"]["type"] == "MemoryJobStore"
        assert body["checks"]["state_store"]["status"] == "healthy"


class TestErrorEnvelope:
    def test_error_body_requires_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="missing code")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_status_codes_map_to_stable_codes(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(418) == "server_error"
        assert set(_STATUS_TO_CODE.values()) >= {"validation_error", "not_found", "server_error"}

    def test_error_response_shape(self):
        response = _error_response(422, "bad code", {"line": 3}, code="compile_error")
        body = json.loads(response.body)
        assert response.status_code == 422
        assert body["status"] == "error"
        assert body["error"] == {"code": "compile_error", "message": "bad code", "details": {"line": 3}}
        assert body["request_id"]

    def test_run_request_accepts_alias_and_field_name(self):
        assert RunWorkflowRequest(jobId="a").job_id == "a"
        assert RunWorkflowRequest(job_id="b").job_id == "b"
