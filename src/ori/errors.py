from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    INVALID_INPUT = "InvalidInput"
    INSUFFICIENT_INPUT = "InsufficientInput"
    SCHEMA_VERSION_MISMATCH = "SchemaVersionMismatch"
    CAPABILITY_UNAVAILABLE = "CapabilityUnavailable"
    TIMEOUT = "Timeout"
    PHASE_ERROR = "PhaseError"
    FILE_OP_ERROR = "FileOpError"
    MAX_RETRIES_EXCEEDED = "MaxRetriesExceeded"
    GATE_ABORT = "GateAbort"
    NOT_FOUND = "NotFound"
    PARSE_ERROR = "ParseError"


class OriError(RuntimeError):
    """Base class for every error the engine reports to callers."""

    kind: ErrorKind = ErrorKind.PHASE_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.retriable = retriable


class InvalidInputError(OriError):
    kind = ErrorKind.INVALID_INPUT


class SchemaVersionMismatchError(OriError):
    kind = ErrorKind.SCHEMA_VERSION_MISMATCH


class ConfigSourceError(OriError):
    """Raised when a configuration document cannot be loaded."""

    kind = ErrorKind.NOT_FOUND


class CapabilityError(OriError):
    """Raised when an external capability call fails."""

    kind = ErrorKind.CAPABILITY_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        capability: str | None = None,
        kind: ErrorKind | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, kind=kind, retriable=retriable)
        self.capability = capability


class CapabilityUnavailableError(CapabilityError):
    kind = ErrorKind.CAPABILITY_UNAVAILABLE


class CapabilityTimeoutError(CapabilityError):
    kind = ErrorKind.TIMEOUT


class FileOpError(OriError):
    kind = ErrorKind.FILE_OP_ERROR

    def __init__(self, message: str, *, path: str | None = None, retriable: bool = True) -> None:
        super().__init__(message, retriable=retriable)
        self.path = path


class PathEscapeError(FileOpError):
    """Raised for paths that resolve outside the file capability's root. Never retried."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, path=path, retriable=False)


class PhaseError(OriError):
    """Raised when a phase violates a business rule or its capability gave up."""

    kind = ErrorKind.PHASE_ERROR

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        kind: ErrorKind | None = None,
        cause_kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message, kind=kind)
        self.phase = phase
        self.cause_kind = cause_kind


class MaxRetriesExceededError(OriError):
    kind = ErrorKind.MAX_RETRIES_EXCEEDED


class GateAbortError(OriError):
    kind = ErrorKind.GATE_ABORT
