"""Error taxonomy for the session memory core.

Every error carries a machine-readable ``code`` plus a human-readable
``message``. The ``category`` groups codes the way callers react to them:

- validation: bad input, rejected before any I/O
- conflict: retry later or pick a different level
- not_found: terminal for the call
- content: expected and benign (nothing to compress, too few messages)
- collaborator: the summarizer failed
- integrity: the manifest on disk is unusable or was changed underneath us
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Standard error codes."""
    # Resource missing
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    KEEPIT_NOT_FOUND = "KEEPIT_NOT_FOUND"
    COMPOSITION_NOT_FOUND = "COMPOSITION_NOT_FOUND"
    COMPOSITION_FILE_NOT_FOUND = "COMPOSITION_FILE_NOT_FOUND"
    SESSION_FILE_NOT_FOUND = "SESSION_FILE_NOT_FOUND"
    VERSION_FILE_NOT_FOUND = "VERSION_FILE_NOT_FOUND"
    PART_NOT_FOUND = "PART_NOT_FOUND"

    # Conflicts
    SESSION_ALREADY_REGISTERED = "SESSION_ALREADY_REGISTERED"
    COMPRESSION_IN_PROGRESS = "COMPRESSION_IN_PROGRESS"
    VERSION_IN_USE = "VERSION_IN_USE"
    VERSION_EXISTS = "VERSION_EXISTS"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    MANIFEST_CONFLICT = "MANIFEST_CONFLICT"

    # Validation
    INVALID_SETTINGS = "INVALID_SETTINGS"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PART = "INVALID_PART"
    INVALID_BUDGET = "INVALID_BUDGET"
    INVALID_NAME = "INVALID_NAME"
    NO_COMPONENTS = "NO_COMPONENTS"
    INVALID_FORMAT = "INVALID_FORMAT"
    CANNOT_DELETE_ORIGINAL = "CANNOT_DELETE_ORIGINAL"

    # Content
    NO_DELTA = "NO_DELTA"
    INSUFFICIENT_MESSAGES = "INSUFFICIENT_MESSAGES"
    NEW_COMPRESSION_REQUIRED = "NEW_COMPRESSION_REQUIRED"
    SESSION_PARSE_ERROR = "SESSION_PARSE_ERROR"

    # Collaborator / integrity
    COMPRESSION_FAILED = "COMPRESSION_FAILED"
    MANIFEST_CORRUPTION = "MANIFEST_CORRUPTION"
    INTERNAL = "INTERNAL"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    CONTENT = "content"
    COLLABORATOR = "collaborator"
    INTEGRITY = "integrity"
    INTERNAL = "internal"


class SessionMemoryError(Exception):
    """Base exception for session memory errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert error to a transport-neutral dictionary."""
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            },
        }


class ValidationError(SessionMemoryError):
    """Malformed input."""
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> None:
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(message=message, code=code, details=details)


class InvalidSettingsError(SessionMemoryError):
    """Compression settings failed validation."""
    category = ErrorCategory.VALIDATION

    def __init__(self, validation_errors: list[str]) -> None:
        super().__init__(
            message=f"Invalid compression settings: {'; '.join(validation_errors)}",
            code=ErrorCode.INVALID_SETTINGS,
            details={"validation_errors": validation_errors},
        )
        self.validation_errors = validation_errors


class NotFoundError(SessionMemoryError):
    """A referenced resource does not exist."""
    category = ErrorCategory.NOT_FOUND


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str, project_id: Optional[str] = None) -> None:
        where = f" in project {project_id}" if project_id else ""
        super().__init__(
            message=f"Session {session_id} not found{where}",
            code=ErrorCode.SESSION_NOT_FOUND,
            details={"session_id": session_id, "project_id": project_id},
        )


class SourceMissingError(NotFoundError):
    """The session's message source file is gone."""

    def __init__(self, path: str) -> None:
        super().__init__(
            message=f"Session file not found: {path}",
            code=ErrorCode.SESSION_FILE_NOT_FOUND,
            details={"path": path},
        )


class ConflictError(SessionMemoryError):
    """The operation collides with existing state; the caller may retry."""
    category = ErrorCategory.CONFLICT


class CompressionInProgressError(ConflictError):
    def __init__(self, session_id: str, operation: str) -> None:
        super().__init__(
            message=f"A {operation} operation is already in progress for session {session_id}",
            code=ErrorCode.COMPRESSION_IN_PROGRESS,
            details={"session_id": session_id, "operation_type": operation},
        )


class VersionExistsError(ConflictError):
    def __init__(self, part_number: int, level: str) -> None:
        super().__init__(
            message=f"Part {part_number} already has a version at compression level {level}",
            code=ErrorCode.VERSION_EXISTS,
            details={"part_number": part_number, "compression_level": level},
        )


class ManifestConflictError(ConflictError):
    """A manifest write was based on a stale revision."""

    def __init__(self, project_id: str, expected: int, actual: int) -> None:
        super().__init__(
            message=(
                f"Manifest for project {project_id} changed since it was loaded "
                f"(revision {expected}, now {actual})"
            ),
            code=ErrorCode.MANIFEST_CONFLICT,
            details={"project_id": project_id, "expected_revision": expected, "actual_revision": actual},
        )


class ContentError(SessionMemoryError):
    """Expected, benign refusal: there is nothing useful to do."""
    category = ErrorCategory.CONTENT


class NoDeltaError(ContentError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            message="No new messages to compress. Session is already fully compressed.",
            code=ErrorCode.NO_DELTA,
            details={"session_id": session_id},
        )


class InsufficientMessagesError(ContentError):
    def __init__(self, message_count: int, required_count: int = 2) -> None:
        super().__init__(
            message=f"At least {required_count} messages are required to compress, got {message_count}",
            code=ErrorCode.INSUFFICIENT_MESSAGES,
            details={"message_count": message_count, "required_count": required_count},
        )


class SessionParseError(ContentError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to parse session file: {reason}",
            code=ErrorCode.SESSION_PARSE_ERROR,
            details={"path": path},
        )


class CompressionFailedError(SessionMemoryError):
    """The summarizer collaborator raised."""
    category = ErrorCategory.COLLABORATOR

    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Compression failed: {reason}",
            code=ErrorCode.COMPRESSION_FAILED,
        )


class ManifestCorruptionError(SessionMemoryError):
    category = ErrorCategory.INTEGRITY

    def __init__(self, project_id: str, reason: str) -> None:
        super().__init__(
            message=f"Manifest for project {project_id} is corrupted: {reason}",
            code=ErrorCode.MANIFEST_CORRUPTION,
            details={"project_id": project_id},
        )


class ErrorResponse(BaseModel):
    """Standard error response model."""
    success: bool = False
    error: dict[str, Any]
