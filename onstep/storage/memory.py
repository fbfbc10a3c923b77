from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from onstep.logging import get_logger
from onstep.service.errors import JobNotFoundError, JobStateError
from onstep.service.state import decode_value, encode_value, validate_key, validate_namespace
from onstep.storage.models import Job, JobResult, JobStatus, can_transition

_ABSENT = object()


class MemoryJobStore:
    """In-process job store used in tests and when ``USE_MEMORY_STORE`` is set.

    Inside ``transaction()`` every write first saves the prior state of the row
    it touches. If the unit of work raises, those rows are restored in reverse
    order, so callers get the same all-or-nothing behaviour as the Postgres
    store without copying whole tables.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.jobs: Dict[str, Job] = {}
        self.job_results: Dict[str, JobResult] = {}
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._undo: Optional[List[Tuple[Dict[str, Any], str, Any]]] = None

    @contextmanager
    def transaction(self) -> Iterator["MemoryJobStore"]:
        with self._data_lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            mark = len(self._undo)
            try:
                yield self
            except BaseException:
                restored = self._rollback(mark)
                self.logger.debug("memory_transaction_rolled_back", rows=restored)
                raise
            finally:
                if outermost:
                    self._undo = None

    def _remember(self, table: Dict[str, Any], key: str) -> None:
        if self._undo is not None:
            self._undo.append((table, key, copy.deepcopy(table.get(key, _ABSENT))))

    def _rollback(self, mark: int) -> int:
        restored = 0
        while len(self._undo) > mark:
            table, key, prior = self._undo.pop()
            if prior is _ABSENT:
                table.pop(key, None)
            else:
                table[key] = prior
            restored += 1
        return restored

    def create_job(self, job: Job) -> Job:
        with self._data_lock:
            if job.id in self.jobs:
                raise JobStateError("job already exists", detail={"job_id": job.id})
            self._remember(self.jobs, job.id)
            self.jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def get_job_by_id(self, job_id: str) -> Optional[Job]:
        with self._data_lock:
            job = self.jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update_job_status(self, job_id: str, status: JobStatus) -> Job:
        with self._data_lock:
            job = self.jobs.get(job_id)
            if not job:
                raise JobNotFoundError("job not found", detail={"job_id": job_id})
            if not can_transition(job.status, status):
                raise JobStateError(
                    f"job cannot move from {JobStatus(job.status).value} to {JobStatus(status).value}",
                    detail={"job_id": job_id},
                )
            self._remember(self.jobs, job_id)
            job.status = JobStatus(status)
            job.updated_at = datetime.utcnow()
            return copy.deepcopy(job)

    def create_job_result(self, result: JobResult) -> JobResult:
        with self._data_lock:
            if result.job_id not in self.jobs:
                raise JobNotFoundError("job not found", detail={"job_id": result.job_id})
            self._remember(self.job_results, result.id)
            self.job_results[result.id] = copy.deepcopy(result)
            return copy.deepcopy(result)

    def update_job_result(
        self,
        result_id: str,
        *,
        status: JobStatus,
        result: Any = None,
        reason: Optional[str] = None,
    ) -> JobResult:
        with self._data_lock:
            existing = self.job_results.get(result_id)
            if not existing:
                raise JobNotFoundError("job result not found", detail={"result_id": result_id})
            if not can_transition(existing.status, status):
                raise JobStateError(
                    "job result is already terminal", detail={"result_id": result_id}
                )
            self._remember(self.job_results, result_id)
            existing.status = JobStatus(status)
            existing.result = copy.deepcopy(result)
            existing.reason = reason
            existing.updated_at = datetime.utcnow()
            return copy.deepcopy(existing)

    def get_all_job_results_by_job_id(
        self, job_id: str, status: Optional[JobStatus] = None
    ) -> List[JobResult]:
        with self._data_lock:
            results = [
                copy.deepcopy(r)
                for r in self.job_results.values()
                if r.job_id == job_id and (status is None or r.status == JobStatus(status))
            ]
        return sorted(results, key=lambda r: r.created_at)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryStateStore:
    """Dict-backed state store with the same JSON semantics as Redis.

    Values are encoded on write and decoded on read, so callers always get a
    fresh copy and non-JSON values are rejected at ``set`` time.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, str]] = {}

    async def get(self, namespace: str, key: str) -> Any:
        validate_namespace(namespace)
        validate_key(key)
        return decode_value(self._data.get(namespace, {}).get(key))

    async def set(self, namespace: str, key: str, value: Any) -> None:
        validate_namespace(namespace)
        validate_key(key)
        encoded = encode_value(value)
        self._data.setdefault(namespace, {})[key] = encoded

    async def delete(self, namespace: str, key: str) -> None:
        validate_namespace(namespace)
        validate_key(key)
        self._data.get(namespace, {}).pop(key, None)

    async def clear(self, namespace: str) -> None:
        validate_namespace(namespace)
        self._data.pop(namespace, None)

    async def get_all(self, namespace: str) -> Dict[str, Any]:
        validate_namespace(namespace)
        return {k: decode_value(v) for k, v in self._data.get(namespace, {}).items()}

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
