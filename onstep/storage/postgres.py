from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from onstep.logging import get_logger
from onstep.service.errors import JobNotFoundError, JobStateError
from onstep.storage.errors import PersistenceError
from onstep.storage.models import Job, JobResult, JobStatus

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_job (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        trigger JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_job_result (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES workflow_job(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        result JSONB,
        reason TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_job_result_job_idx ON workflow_job_result (job_id, status)",
)


def _job_from_row(row: dict) -> Job:
    return Job(
        id=row["id"],
        workflow_id=row["workflow_id"],
        user_id=row["user_id"],
        status=JobStatus(row["status"]),
        trigger=row.get("trigger") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _result_from_row(row: dict) -> JobResult:
    return JobResult(
        id=row["id"],
        job_id=row["job_id"],
        status=JobStatus(row["status"]),
        result=row.get("result"),
        reason=row.get("reason"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresJobStore:
    """Postgres-backed job store.

    Every public method runs on a pooled connection and commits on its own,
    unless the store was obtained from ``transaction()``; then all calls share
    one connection and commit or roll back together.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._bound_conn = None
        if ensure_schema:
            self.ensure_schema()

    @contextmanager
    def _connect(self):
        if self._bound_conn is not None:
            yield self._bound_conn
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except PsycopgError as exc:
            self.logger.warning("job_store_query_failed", error=str(exc))
            raise PersistenceError(f"job store error: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator["PostgresJobStore"]:
        if self._bound_conn is not None:
            yield self
            return
        try:
            with self.pool.connection() as conn, conn.transaction():
                bound = copy.copy(self)
                bound._bound_conn = conn
                yield bound
        except PsycopgError as exc:
            self.logger.warning("job_store_transaction_failed", error=str(exc))
            raise PersistenceError(f"job store transaction failed: {exc}") from exc

    def ensure_schema(self) -> None:
        """Create the job tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def create_job(self, job: Job) -> Job:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO workflow_job (id, workflow_id, user_id, status, trigger, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                RETURNING *
                """,
                (
                    job.id,
                    job.workflow_id,
                    job.user_id,
                    JobStatus(job.status).value,
                    Jsonb(job.trigger),
                    job.created_at,
                    job.updated_at,
                ),
            ).fetchone()
        if not row:
            raise JobStateError("job already exists", detail={"job_id": job.id})
        return _job_from_row(row)

    def get_job_by_id(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_job WHERE id = %s", (job_id,)
            ).fetchone()
        return _job_from_row(row) if row else None

    def update_job_status(self, job_id: str, status: JobStatus) -> Job:
        target = JobStatus(status)
        with self._connect() as conn:
            # Only pending jobs may change status
            row = conn.execute(
                """
                UPDATE workflow_job SET status = %s, updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (target.value, datetime.utcnow(), job_id, JobStatus.PENDING.value),
            ).fetchone()
            if row:
                return _job_from_row(row)
            exists = conn.execute(
                "SELECT status FROM workflow_job WHERE id = %s", (job_id,)
            ).fetchone()
        if not exists:
            raise JobNotFoundError("job not found", detail={"job_id": job_id})
        raise JobStateError(
            f"job cannot move from {exists['status']} to {target.value}",
            detail={"job_id": job_id},
        )

    def create_job_result(self, result: JobResult) -> JobResult:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO workflow_job_result (id, job_id, status, result, reason, created_at, updated_at)
                SELECT %s, %s, %s, %s, %s, %s, %s
                WHERE EXISTS (SELECT 1 FROM workflow_job WHERE id = %s)
                RETURNING *
                """,
                (
                    result.id,
                    result.job_id,
                    JobStatus(result.status).value,
                    Jsonb(result.result) if result.result is not None else None,
                    result.reason,
                    result.created_at,
                    result.updated_at,
                    result.job_id,
                ),
            ).fetchone()
        if not row:
            raise JobNotFoundError("job not found", detail={"job_id": result.job_id})
        return _result_from_row(row)

    def update_job_result(
        self,
        result_id: str,
        *,
        status: JobStatus,
        result: Any = None,
        reason: Optional[str] = None,
    ) -> JobResult:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow_job_result
                SET status = %s, result = %s, reason = %s, updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    JobStatus(status).value,
                    Jsonb(result) if result is not None else None,
                    reason,
                    datetime.utcnow(),
                    result_id,
                    JobStatus.PENDING.value,
                ),
            ).fetchone()
        if not row:
            raise JobStateError(
                "job result is missing or already terminal", detail={"result_id": result_id}
            )
        return _result_from_row(row)

    def get_all_job_results_by_job_id(
        self, job_id: str, status: Optional[JobStatus] = None
    ) -> List[JobResult]:
        query = "SELECT * FROM workflow_job_result WHERE job_id = %s"
        params: list = [job_id]
        if status is not None:
            query += " AND status = %s"
            params.append(JobStatus(status).value)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_result_from_row(row) for row in rows]

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
