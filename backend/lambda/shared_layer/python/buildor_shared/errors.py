"""buildor_shared.errors: error taxonomy shared by the API and event handlers.

Every error carries the HTTP status and envelope code the API handlers
render, plus whether the caller (or the event dispatcher) should retry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BuildorError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ValidationError(BuildorError):
    """Request input is missing or malformed."""

    status_code = 400
    code = "INVALID_INPUT"


class NotFound(BuildorError):
    status_code = 404
    code = "NOT_FOUND"


class TriggerFailed(BuildorError):
    """The build service refused or failed to start a build."""

    status_code = 502
    code = "TRIGGER_FAILED"
    retryable = True


class OrphanEvent(BuildorError):
    """A build event arrived whose job matches no deployment record.

    Raised only while the event is young enough that the record may still be
    on its way; the handler fails so the dispatcher redelivers.
    """

    code = "ORPHAN_EVENT"
    retryable = True

    def __init__(self, build_job_id: str, age_seconds: float) -> None:
        super().__init__(
            f"No deployment for build job {build_job_id} (event age {age_seconds:.0f}s)",
            details={"buildJobId": build_job_id, "ageSeconds": int(age_seconds)},
        )
        self.build_job_id = build_job_id
        self.age_seconds = age_seconds


class TransientStoreError(BuildorError):
    status_code = 503
    code = "STORE_UNAVAILABLE"
    retryable = True


class MissingConfigError(BuildorError):
    code = "CONFIG_ERROR"
