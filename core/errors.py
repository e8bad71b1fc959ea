"""
Exception hierarchy for the orchestration core.

The consumer classifies failures by type:
  - MalformedEnvelopeError / PayloadValidationError / UnknownJobTypeError
    are terminal-by-policy: retrying cannot change the outcome.
  - Anything else raised by a handler is treated as transient and retried
    until the attempt ceiling is reached.
"""
from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all orchestration errors."""


class MalformedEnvelopeError(PipelineError):
    """A queue message could not be parsed into {jobId, type, payload}."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class UnknownJobTypeError(PipelineError):
    """A job type is not part of the closed registry."""


class PayloadValidationError(PipelineError):
    """A job payload does not match the typed variant for its job type."""

    def __init__(self, job_type: str, errors: Any):
        super().__init__(f"Invalid payload for job type {job_type}: {errors}")
        self.job_type = job_type
        self.errors = errors


class DuplicateEventError(PipelineError):
    """The (tenant, type, dedupe_key) triple already exists."""


class NotFoundError(PipelineError):
    """A referenced record does not exist."""


class InvalidTransitionError(PipelineError):
    """A status change was requested from a status that does not allow it."""


class ModelUnavailableError(PipelineError):
    """The generative-text service is not configured or not reachable."""


class ModelResponseError(PipelineError):
    """The model answered, but the answer failed parsing, schema or grounding checks."""
