"""Control-plane error taxonomy."""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for scheduler control errors."""


class StoreUnavailable(ControlPlaneError):
    """Raised when the persistence layer cannot be read or written."""


class UnknownJobId(ControlPlaneError):
    """Raised when a job id is outside the configured closed set."""

    def __init__(self, job_id: str, known: tuple[str, ...] = ()) -> None:
        self.job_id = job_id
        self.known = known
        msg = f"Unknown scheduler id: {job_id!r}"
        if known:
            msg += f" (expected one of: {', '.join(known)})"
        super().__init__(msg)


class InvalidControlField(ControlPlaneError):
    """Raised when an upsert carries an unknown field or an invalid value."""


class ProbeFailure(Exception):
    """Raised by a health probe; confined to that probe's snapshot slot."""
