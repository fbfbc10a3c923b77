from __future__ import annotations

from onstep.service.errors import WorkflowError


class PersistenceError(WorkflowError):
    """Raised when the job store backend fails to read or write."""

    status_code = 503
    error_code = "persistence_error"


class StateStoreError(WorkflowError):
    """Raised when the state store backend fails or a value is not storable."""

    status_code = 503
    error_code = "state_store_error"


__all__ = ["PersistenceError", "StateStoreError"]
