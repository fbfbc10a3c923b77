from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Lifecycle of a job and of each job result: pending -> completed | failed."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.PENDING


# Allowed transitions; terminal statuses never change again.
JOB_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


@dataclass
class Job:
    id: str
    workflow_id: str
    user_id: str
    status: JobStatus = JobStatus.PENDING
    trigger: Dict[str, Any] = field(default_factory=lambda: {"type": "immediate"})
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls, workflow_id: str, user_id: str, *, trigger: Optional[Dict[str, Any]] = None
    ) -> "Job":
        return cls(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            user_id=user_id,
            trigger=dict(trigger or {"type": "immediate"}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "status": JobStatus(self.status).value,
            "trigger": self.trigger,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class JobResult:
    id: str
    job_id: str
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        job_id: str,
        status: JobStatus = JobStatus.PENDING,
        *,
        result: Any = None,
        reason: Optional[str] = None,
    ) -> "JobResult":
        return cls(
            id=str(uuid.uuid4()),
            job_id=job_id,
            status=status,
            result=result,
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": JobStatus(self.status).value,
            "result": self.result,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
