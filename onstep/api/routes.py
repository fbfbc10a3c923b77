from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException

from onstep.api.schemas import (
    AbortJobRequest,
    CreateJobRequest,
    Envelope,
    JobResponse,
    JobResultResponse,
    RunWorkflowRequest,
)
from onstep.logging import get_correlation_id, get_logger
from onstep.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data, status: str = "ok") -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status=status, data=data, request_id=request_id)
    return Envelope(status=status, data=data)


def _job_payload(job, results) -> dict:
    return JobResponse(
        **job.to_dict(),
        results=[JobResultResponse(**r.to_dict()) for r in results],
    ).model_dump()


@router.post("/workflow", response_model=Envelope, tags=["workflow"])
async def run_workflow(body: RunWorkflowRequest) -> Envelope:
    """Run one pending job to completion.

    Workflow failures are recorded on the job and reported in the body with
    a 200 status; only an unknown job id is an HTTP error.
    """
    runtime = get_runtime()
    outcome = await runtime.jobs.run_job(body.job_id)
    return _ok(outcome.to_dict())


@router.post("/workflow/{job_id}/abort", response_model=Envelope, tags=["workflow"])
async def abort_workflow(job_id: str, body: Optional[AbortJobRequest] = None) -> Envelope:
    runtime = get_runtime()
    job, _ = await runtime.jobs.get_job(job_id)
    if job.status.terminal:
        raise _http_error("conflict", f"job is already {job.status.value}", status_code=409)
    reason = body.reason if body else AbortJobRequest().reason
    outcome = await runtime.jobs.handle_failure(job_id, reason)
    return _ok(outcome.to_dict())


@router.post("/jobs", response_model=Envelope, status_code=201, tags=["jobs"])
async def create_job(body: CreateJobRequest) -> Envelope:
    runtime = get_runtime()
    job, pending = await runtime.jobs.create_job(body.workflow_id, body.user_id, body.trigger)
    return _ok(_job_payload(job, [pending]))


@router.get("/jobs/{job_id}", response_model=Envelope, tags=["jobs"])
async def get_job(job_id: str) -> Envelope:
    runtime = get_runtime()
    job, results = await runtime.jobs.get_job(job_id)
    return _ok(_job_payload(job, results))
