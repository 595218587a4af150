"""Error taxonomy shared by the capture pipeline and the HTTP layer."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "CaptureError",
    "ValidationError",
    "UnsafeUrlError",
    "NavigationFailure",
    "NavigationError",
    "TransformError",
    "StorageUploadError",
    "PersistenceError",
    "JobNotFoundError",
    "JobAccessError",
    "JobStateError",
    "normalize_error_message",
]

GENERIC_FAILURE_MESSAGE = "Capture failed due to an internal error"


class CaptureError(Exception):
    """Base class for failures that carry a caller-safe message."""

    code = "CAPTURE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, public_message: str | None = None) -> None:
        super().__init__(message)
        self.public_message = public_message or message


class ValidationError(CaptureError):
    """Malformed capture options or URL shape."""

    code = "VALIDATION_ERROR"
    status_code = 400


class UnsafeUrlError(ValidationError):
    """Target URL points somewhere the service must not reach."""

    code = "UNSAFE_URL"


class NavigationFailure(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "http_status"


class NavigationError(CaptureError):
    """The page could not be loaded."""

    code = "NAVIGATION_ERROR"

    def __init__(
        self,
        kind: NavigationFailure,
        message: str,
        *,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @classmethod
    def timeout(cls) -> NavigationError:
        return cls(NavigationFailure.TIMEOUT, "Page loading timeout exceeded")

    @classmethod
    def network(cls, detail: str = "network error") -> NavigationError:
        return cls(NavigationFailure.NETWORK, f"Failed to load page - {detail}")

    @classmethod
    def http_status(cls, status: int, status_text: str = "") -> NavigationError:
        suffix = f": {status_text}" if status_text else ""
        return cls(
            NavigationFailure.HTTP_STATUS,
            f"Failed to load page - HTTP {status}{suffix}",
            status=status,
        )


class TransformError(CaptureError):
    """Image encoding or optimization failed."""

    code = "TRANSFORM_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, public_message="Image processing failed")


class StorageUploadError(CaptureError):
    """Remote upload failed; callers fall back to the local artifact."""

    code = "STORAGE_UPLOAD_ERROR"


class PersistenceError(CaptureError):
    """Job or usage state could not be written."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, public_message="Internal server error")


class JobNotFoundError(CaptureError):
    code = "JOB_NOT_FOUND"
    status_code = 404

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Capture job {job_id} not found", public_message="Capture job not found")
        self.job_id = job_id


class JobAccessError(CaptureError):
    code = "ACCESS_DENIED"
    status_code = 403

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Access denied to job {job_id}", public_message="Access denied to this job")
        self.job_id = job_id


class JobStateError(CaptureError):
    """Raised when a job is not in the state an operation requires."""

    code = "JOB_NOT_PENDING"
    status_code = 409

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(
            f"Job {job_id} is {status}, expected pending",
            public_message=f"Job is already {status}",
        )
        self.job_id = job_id
        self.status = status


def normalize_error_message(exc: BaseException, *, debug: bool = False) -> str:
    """Return a user-visible message without stack details."""

    if isinstance(exc, CaptureError):
        return exc.public_message
    if debug:
        return f"{type(exc).__name__}: {exc}"
    return GENERIC_FAILURE_MESSAGE
