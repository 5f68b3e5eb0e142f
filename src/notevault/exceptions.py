"""Custom exceptions for Notevault.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_MALFORMED = 1003

    # Share errors (2xxx)
    SHARE_NOT_FOUND = 2001
    PASSWORD_REQUIRED = 2002
    PASSWORD_INVALID = 2003

    # Account errors (3xxx)
    USER_NOT_FOUND = 3001
    ACCOUNT_EXISTS = 3002
    ACCOUNT_FORBIDDEN = 3003
    AUTHENTICATION_FAILED = 3004

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    INDEX_CORRUPTED = 4005

    # Backup errors (5xxx)
    BACKUP_INVALID = 5001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    MEDIA_REJECTED = 7002
    PATH_TRAVERSAL_DETECTED = 7005


class NotevaultError(Exception):
    """Base exception for all Notevault errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NotevaultError):
    """Raised when a note exists in no known on-disk format."""

    def __init__(
        self,
        note_id: str,
        user_id: Optional[str] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOTE_NOT_FOUND,
    ):
        details = {"note_id": note_id}
        if user_id:
            details["user_id"] = user_id
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=code,
            details=details
        )
        self.note_id = note_id
        self.user_id = user_id


class MalformedDocumentError(NoteNotFoundError):
    """Raised when an on-disk document exists but cannot be parsed.

    Read paths treat this exactly like NoteNotFoundError; callers that
    need to tell the two apart (repair tooling, logging) can catch it
    explicitly.
    """

    def __init__(
        self,
        document: str,
        note_id: str = "",
        user_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            note_id,
            user_id=user_id,
            message=f"Document '{document}' is malformed",
            code=ErrorCode.NOTE_MALFORMED,
        )
        self.details["document"] = document
        if original_error:
            self.details["original_error"] = str(original_error)[:200]
        self.document = document
        self.original_error = original_error


class ShareNotFoundError(NotevaultError):
    """Raised when a share token does not resolve to a live note."""

    def __init__(self, token: str):
        super().__init__(
            "Shared note not found",
            code=ErrorCode.SHARE_NOT_FOUND,
            # Only a prefix; tokens are bearer secrets
            details={"token_hint": token[:6]}
        )
        self.token = token


class PasswordRequiredError(NotevaultError):
    """Raised when a protected note is accessed without a password."""

    def __init__(self, note_id: Optional[str] = None):
        super().__init__(
            "Password required",
            code=ErrorCode.PASSWORD_REQUIRED,
            details={"note_id": note_id} if note_id else None
        )
        self.note_id = note_id


class InvalidPasswordError(NotevaultError):
    """Raised when the supplied password does not match the stored hash."""

    def __init__(self, note_id: Optional[str] = None):
        super().__init__(
            "Invalid password",
            code=ErrorCode.PASSWORD_INVALID,
            details={"note_id": note_id} if note_id else None
        )
        self.note_id = note_id


class UserNotFoundError(NotevaultError):
    """Raised when an account does not exist."""

    def __init__(self, username: str):
        super().__init__(
            f"User '{username}' not found",
            code=ErrorCode.USER_NOT_FOUND,
            details={"username": username}
        )
        self.username = username


class AccountError(NotevaultError):
    """Raised when an account operation is refused."""

    def __init__(
        self,
        message: str,
        username: Optional[str] = None,
        code: ErrorCode = ErrorCode.ACCOUNT_FORBIDDEN
    ):
        details = {}
        if username:
            details["username"] = username

        super().__init__(message, code=code, details=details)
        self.username = username


class StorageError(NotevaultError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages for security
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class ValidationError(NotevaultError):
    """Raised when caller-supplied data violates a constraint."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
