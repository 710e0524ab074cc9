# app/core/dispatch/errors.py
"""
Typed errors raised by the dispatch engine.

Each error maps to a specific HTTP status code. The transport layer
catches ``DispatchError`` subtypes and converts them to responses
without embedding business logic in the route handlers.

"No eligible candidates" is deliberately absent: it is a normal
``DispatchResult`` outcome, not an exception.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class JobNotFoundError(DispatchError):
    """Job does not exist (404)."""

    status_code = 404

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class AppraiserNotFoundError(DispatchError):
    """Appraiser profile does not exist (404)."""

    status_code = 404

    def __init__(self, appraiser_id: str):
        self.appraiser_id = appraiser_id
        super().__init__(f"Appraiser not found: {appraiser_id}")


class InvalidTransitionError(DispatchError):
    """Operation not allowed from the job's current state (409)."""

    status_code = 409


class StaleStateError(DispatchError):
    """Job changed between read and conditional update (409, retryable).

    The caller may re-fetch the job and retry once.
    """

    status_code = 409
    retryable = True

    def __init__(self, job_id: str, expected_status: str):
        self.job_id = job_id
        self.expected_status = expected_status
        super().__init__(
            f"Job {job_id} is no longer {expected_status}; re-fetch and retry"
        )
