"""Pipeline error taxonomy.

Every error carries a stable machine ``code`` and the HTTP status the API answers with. A duplicate
telemetry session is deliberately absent: ingestion reports it as a ``duplicate`` status, not as a
failure.
"""
from __future__ import annotations


class PipelineError(Exception):
    code = "pipeline_error"
    http_status = 500

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "reason": self.message}
        body.update(self.details)
        return body


class ValidationFailedError(PipelineError):
    code = "validation_failed"
    http_status = 422


class NotFoundError(PipelineError):
    code = "not_found"
    http_status = 404


class InvalidTransitionError(PipelineError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, message: str | None = None, current_status: str | None = None, **details):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class GatingFailedError(PipelineError):
    code = "gating_failed"
    http_status = 422

    def __init__(self, failed_checks: list[dict], current_status: str | None = None):
        names = ", ".join(c["name"] for c in failed_checks)
        super().__init__(f"gating checks failed: {names}", failed_checks=failed_checks, current_status=current_status)
        self.failed_checks = failed_checks
        self.current_status = current_status


class ConflictingCanaryError(PipelineError):
    code = "conflicting_canary"
    http_status = 409


class PipelineTimeoutError(PipelineError):
    code = "timeout"
    http_status = 504


class StorageUnavailableError(PipelineError):
    code = "storage_unavailable"
    http_status = 503
