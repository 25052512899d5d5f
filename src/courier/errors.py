"""Error taxonomy shared by every Courier component.

Each class maps to one handling policy:
- ValidationError: rejected synchronously, never queued (HTTP 400)
- AuthError: rejected before any state mutation (HTTP 401)
- NotFoundError: unknown session/job/code, no retry (HTTP 404)
- ExecutionFailure: recorded on the job and delivered, not retried
- TransientDeliveryFailure: retried with bounded backoff, then logged
- PersistenceCorruption: the single record is skipped and logged
"""

from __future__ import annotations


class CourierError(Exception):
    """Base class for all Courier errors."""

    status_code = 500


class ValidationError(CourierError):
    """Bad command definition, bad request body, or bad configuration."""

    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class AuthError(CourierError):
    """Missing, malformed, or expired request signature."""

    status_code = 401


class NotFoundError(CourierError):
    """Unknown session, job, or code."""

    status_code = 404


class ExecutionFailure(CourierError):
    """Agent process exited non-zero, could not be spawned, or timed out."""


class TransientDeliveryFailure(CourierError):
    """Callback or result delivery failed after all retries."""


class PersistenceCorruption(CourierError):
    """A record file could not be read or parsed."""

    def __init__(self, path, reason: str):
        super().__init__(f"Corrupt record {path}: {reason}")
        self.path = path
        self.reason = reason


class SessionCodeExhausted(CourierError):
    """No unique session code could be generated."""


class LockError(CourierError):
    """Another process already owns the queue."""
