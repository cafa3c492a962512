"""Custom exceptions for the Todo MCP server.

Every error the service and tool layers raise derives from TodoError and
carries an ErrorCode that MCP clients can branch on.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Stable numeric codes, grouped by area (1xxx todos, 2xxx bulk, ...)."""

    # Todo / category errors (1xxx)
    NOT_FOUND_OR_DENIED = 1001
    VERSION_CONFLICT = 1002
    CATEGORY_NOT_FOUND = 1003
    CATEGORY_ALREADY_EXISTS = 1004
    TODO_TITLE_REQUIRED = 1005

    # Bulk operation errors (2xxx)
    PARTIAL_FAILURE = 2001

    # Access errors (3xxx)
    PERMISSION_DENIED = 3001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    TRANSIENT_NETWORK_ERROR = 4003

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


def _context(**values: Any) -> Dict[str, Any]:
    """Build an error details dict, dropping unset values.

    Exceptions are stored as their (truncated) message so that ``details``
    stays JSON-serializable.
    """
    details: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None or value == "":
            continue
        if isinstance(value, BaseException):
            value = str(value)[:200]
        details[key] = value
    return details


class TodoError(Exception):
    """Root of the error hierarchy.

    ``message`` is shown to MCP clients, ``code`` lets them branch without
    parsing text and ``details`` carries ids and counts for the failure.
    """

    # Only transient failures may be retried by callers
    retryable = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = dict(details) if details else {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in tool responses and logs."""
        return dict(
            error=type(self).__name__,
            code=self.code.value,
            code_name=self.code.name,
            message=self.message,
            details=self.details,
        )

    def __str__(self) -> str:
        text = f"[{self.code.name}] {self.message}"
        if not self.details:
            return text
        pairs = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{text} ({pairs})"


class NotFoundOrDeniedError(TodoError):
    """Raised when a row is absent or not owned by the caller.

    The two cases are deliberately indistinguishable to the caller.
    """

    def __init__(
        self,
        entity: str,
        entity_id: str,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND_OR_DENIED
    ):
        super().__init__(
            message or f"{entity.capitalize()} not found or access denied",
            code=code,
            details={"entity": entity, "id": entity_id}
        )
        self.entity = entity
        self.entity_id = entity_id


class VersionConflictError(TodoError):
    """Raised when an optimistic-lock update sees a different version."""

    def __init__(
        self,
        todo_id: str,
        expected_version: int,
        actual_version: Optional[int] = None
    ):
        super().__init__(
            "Version conflict: todo was modified by another process",
            code=ErrorCode.VERSION_CONFLICT,
            details=_context(
                todo_id=todo_id,
                expected_version=expected_version,
                actual_version=actual_version,
            )
        )
        self.todo_id = todo_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PartialFailureError(TodoError):
    """Raised when a bulk operation touched fewer rows than requested.

    The enclosing transaction is rolled back, so nothing was applied.
    ``details["missing_ids"]`` holds at most ten ids; ``missing_ids`` on
    the instance keeps all of them.
    """

    def __init__(
        self,
        operation: str,
        requested_count: int,
        affected_count: int,
        missing_ids: Optional[List[str]] = None,
        message: Optional[str] = None
    ):
        if min(requested_count, affected_count) < 0:
            raise ValueError("counts must be non-negative")

        self.operation = operation
        self.requested_count = requested_count
        self.affected_count = affected_count
        self.missing_ids: List[str] = list(missing_ids or [])

        super().__init__(
            message or (
                f"{requested_count - affected_count} of {requested_count} todos "
                f"could not be processed; nothing was changed"
            ),
            code=ErrorCode.PARTIAL_FAILURE,
            details=_context(
                operation=operation,
                requested_count=requested_count,
                affected_count=affected_count,
                missing_ids=self.missing_ids[:10] or None,
            )
        )


class PermissionDeniedError(TodoError):
    """Raised when no verified user identity is available."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, code=ErrorCode.PERMISSION_DENIED)


class TransientNetworkError(TodoError):
    """Raised for failures that may succeed when retried (locks, timeouts)."""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            code=ErrorCode.TRANSIENT_NETWORK_ERROR,
            details=_context(operation=operation, original_error=original_error)
        )
        self.operation = operation
        self.original_error = original_error


class ValidationError(TodoError):
    """Bad input from a tool call: empty titles, unknown categories, bad ranges."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        shown = None if value is None else str(value)[:100]
        super().__init__(message, code=code, details=_context(field=field, value=shown))
        self.field = field
        self.value = value


class StorageError(TodoError):
    """A database read or write failed for a non-transient reason."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            code=code,
            details=_context(operation=operation, original_error=original_error)
        )
        self.operation = operation
        self.original_error = original_error


class SearchError(TodoError):
    """A search could not be run, either a bad query or a failed lookup."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        super().__init__(
            message, code=code, details=_context(query=query[:100] if query else None)
        )
        self.query = query
