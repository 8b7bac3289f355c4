"""Error taxonomy and structured outcomes.

Remote SDK failures are translated exactly once, inside the adapters, into a
`RemoteError` carrying a closed `ErrorKind`. Core functions never let an
exception escape their own boundary: they convert `RemoteError` and
`MissingArgument` into an `Outcome` so callers handle a single shape.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from botocore.exceptions import BotoCoreError, ClientError


class ErrorKind(str, Enum):
    """
    Closed classification of failures surfaced by the core.

    Values:
        VALIDATION: A required argument or environment value is missing/invalid.
        NOT_FOUND: The referenced resource does not exist.
        PERMISSION_DENIED: The call was rejected by access control.
        CONFLICT: Remote-side contention (already exists, concurrent change).
        LIMIT_EXCEEDED: A remote quota was hit.
        THROTTLED: The remote service asked the caller to slow down.
        TRANSIENT: Remote service fault; safe to re-invoke later.
        TIMED_OUT: An operation or polling bound was exceeded.
        UNKNOWN: Unmapped native error identifier.
    """

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONFLICT = "CONFLICT"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    THROTTLED = "THROTTLED"
    TRANSIENT = "TRANSIENT"
    TIMED_OUT = "TIMED_OUT"
    UNKNOWN = "UNKNOWN"


# native identifier -> (kind, status code)
_NATIVE_CODES: dict[str, tuple[ErrorKind, int]] = {
    "ValidationException": (ErrorKind.VALIDATION, 400),
    "InvalidParameterValueException": (ErrorKind.VALIDATION, 400),
    "InvalidInputException": (ErrorKind.VALIDATION, 400),
    "InvalidRequest": (ErrorKind.VALIDATION, 400),
    "EncryptionTypeMismatch": (ErrorKind.VALIDATION, 400),
    "InvalidWriteOffset": (ErrorKind.VALIDATION, 400),
    "ResourceNotFoundException": (ErrorKind.NOT_FOUND, 404),
    "EntityNotFoundException": (ErrorKind.NOT_FOUND, 404),
    "NotFound": (ErrorKind.NOT_FOUND, 404),
    "NoSuchBucket": (ErrorKind.NOT_FOUND, 404),
    "NoSuchKey": (ErrorKind.NOT_FOUND, 404),
    "404": (ErrorKind.NOT_FOUND, 404),
    "AccessDeniedException": (ErrorKind.PERMISSION_DENIED, 403),
    "AccessDenied": (ErrorKind.PERMISSION_DENIED, 403),
    "Forbidden": (ErrorKind.PERMISSION_DENIED, 403),
    "403": (ErrorKind.PERMISSION_DENIED, 403),
    "UnsupportedUserEditionException": (ErrorKind.PERMISSION_DENIED, 403),
    "InvalidAccessKeyId": (ErrorKind.PERMISSION_DENIED, 403),
    "InvalidClientTokenId": (ErrorKind.PERMISSION_DENIED, 403),
    "UnrecognizedClientException": (ErrorKind.PERMISSION_DENIED, 403),
    "ExpiredToken": (ErrorKind.PERMISSION_DENIED, 403),
    "ConflictException": (ErrorKind.CONFLICT, 409),
    "ResourceExistsException": (ErrorKind.CONFLICT, 409),
    "AlreadyExistsException": (ErrorKind.CONFLICT, 409),
    "ConcurrentModificationException": (ErrorKind.CONFLICT, 409),
    "BucketAlreadyExists": (ErrorKind.CONFLICT, 409),
    "BucketAlreadyOwnedByYou": (ErrorKind.CONFLICT, 409),
    "LimitExceededException": (ErrorKind.LIMIT_EXCEEDED, 409),
    "ResourceNumberLimitExceededException": (ErrorKind.LIMIT_EXCEEDED, 409),
    "TooManyParts": (ErrorKind.LIMIT_EXCEEDED, 413),
    "ThrottlingException": (ErrorKind.THROTTLED, 429),
    "Throttling": (ErrorKind.THROTTLED, 429),
    "SlowDown": (ErrorKind.THROTTLED, 429),
    "TooManyRequestsException": (ErrorKind.THROTTLED, 429),
    "InternalFailureException": (ErrorKind.TRANSIENT, 500),
    "InternalServiceException": (ErrorKind.TRANSIENT, 500),
    "InternalError": (ErrorKind.TRANSIENT, 500),
    "ServiceUnavailable": (ErrorKind.TRANSIENT, 503),
    "ResourceNotReadyException": (ErrorKind.TRANSIENT, 500),
    "GlueEncryptionException": (ErrorKind.TRANSIENT, 500),
    "FederationSourceException": (ErrorKind.TRANSIENT, 500),
    "FederationSourceRetryableException": (ErrorKind.TRANSIENT, 500),
    "OperationTimeoutException": (ErrorKind.TIMED_OUT, 504),
}

_DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.LIMIT_EXCEEDED: 409,
    ErrorKind.THROTTLED: 429,
    ErrorKind.TRANSIENT: 500,
    ErrorKind.TIMED_OUT: 504,
    ErrorKind.UNKNOWN: 500,
}


def classify(error_type: str | None) -> tuple[ErrorKind, int]:
    """Map a native error identifier to (kind, status code)."""
    if not error_type:
        return ErrorKind.UNKNOWN, 500
    return _NATIVE_CODES.get(error_type, (ErrorKind.UNKNOWN, 500))


class MissingArgument(ValueError):
    """Raised when a required argument or environment value is absent."""


class RemoteError(RuntimeError):
    """A remote call failed; carries the already-classified failure."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        kind: ErrorKind | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        mapped_kind, mapped_status = classify(error_type)
        self.message = message
        self.error_type = error_type or "UnknownError"
        self.kind = kind or mapped_kind
        self.status_code = status_code or (
            mapped_status if kind is None else _DEFAULT_STATUS[self.kind]
        )

    @classmethod
    def from_client_error(cls, exc: ClientError, operation: str) -> RemoteError:
        """Build a RemoteError from a botocore ClientError."""
        err = exc.response.get("Error", {}) if exc.response else {}
        code = str(err.get("Code") or "") or None
        message = err.get("Message") or str(exc)
        return cls(f"{operation}: {message}", error_type=code)

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND


@contextmanager
def remote_call(operation: str) -> Iterator[None]:
    """
    Translate botocore failures raised inside the block into RemoteError.

    Used by every adapter method so the classification happens once, at the
    boundary with the SDK.
    """
    try:
        yield
    except ClientError as exc:
        raise RemoteError.from_client_error(exc, operation) from exc
    except BotoCoreError as exc:
        raise RemoteError(
            f"{operation}: {exc}",
            error_type=type(exc).__name__,
            kind=ErrorKind.TRANSIENT,
            status_code=503,
        ) from exc


@dataclass(frozen=True)
class Outcome:
    """
    Structured result of a stage, pass or provisioning step.

    Attributes:
        status_code: HTTP-like status (2xx on success).
        message: Human readable message naming the stage/entity involved.
        error_type: Original remote error identifier, when one exists.
        kind: Classified error kind (None on success).
    """

    status_code: int
    message: str
    error_type: str | None = None
    kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def success(cls, message: str, status_code: int = 200) -> Outcome:
        return cls(status_code=status_code, message=message)

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        error_type: str | None = None,
        status_code: int | None = None,
    ) -> Outcome:
        return cls(
            status_code=status_code or _DEFAULT_STATUS[kind],
            message=message,
            error_type=error_type or ("UnknownError" if kind is ErrorKind.UNKNOWN else None),
            kind=kind,
        )

    @classmethod
    def from_error(cls, exc: Exception, *, context: str) -> Outcome:
        """
        Convert a failure raised inside a core boundary into an Outcome.

        The message always names the failing context and the original remote
        error identifier when available.
        """
        if isinstance(exc, RemoteError):
            return cls(
                status_code=exc.status_code,
                message=f"[{exc.error_type}] {context}: {exc.message}",
                error_type=exc.error_type,
                kind=exc.kind,
            )
        if isinstance(exc, MissingArgument):
            return cls(
                status_code=400,
                message=f"[ReferenceError] {context}: {exc}",
                error_type="ReferenceError",
                kind=ErrorKind.VALIDATION,
            )
        return cls(
            status_code=500,
            message=f"[{type(exc).__name__}] {context}: {exc}",
            error_type="UnknownError",
            kind=ErrorKind.UNKNOWN,
        )


def require(**values: object) -> None:
    """Raise MissingArgument for the first empty keyword value."""
    for name, value in values.items():
        if value is None or value == "" or value == [] or value == ():
            raise MissingArgument(f"Missing '{name}'.")
