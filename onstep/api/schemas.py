from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code, e.g. not_found or sandbox_error")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RunWorkflowRequest(BaseModel):
    """Inbound trigger payload: run one pending job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1, max_length=255)


class AbortJobRequest(BaseModel):
    reason: str = Field("aborted by trigger", min_length=1, max_length=2000)


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(..., alias="workflowId", min_length=1, max_length=255)
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)
    trigger: Optional[Dict[str, Any]] = None


class JobResultResponse(BaseModel):
    id: str
    job_id: str
    status: str
    result: Optional[Any] = None
    reason: Optional[str] = None
    created_at: str
    updated_at: str


class JobResponse(BaseModel):
    id: str
    workflow_id: str
    user_id: str
    status: str
    trigger: Dict[str, Any]
    created_at: str
    updated_at: str
    results: List[JobResultResponse] = Field(default_factory=list)
