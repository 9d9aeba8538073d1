from enum import Enum
from typing import Optional


class QueryEngineError(Exception):
    """
    Base exception for the query execution and result caching engine.
    Attributes:
        message (str): A human-readable error message.
        original_exception (Exception, optional): The original exception that triggered this one.
    """

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception

    def __str__(self):
        if self.original_exception:
            return f"{self.message} (Caused by: {repr(self.original_exception)})"
        return self.message

    def __repr__(self):
        return f"{self.__class__.__name__}(message={self.message!r}, original_exception={self.original_exception!r})"


class ValidationCategory(Enum):
    SYNTAX_ERROR = "SyntaxError"
    UNSUPPORTED_STATEMENT = "UnsupportedStatement"


class SqlValidationError(QueryEngineError):
    """Raised by the local validator; carries the ValidationIssue describing the rejection."""

    def __init__(self, issue, original_exception: Optional[Exception] = None):
        super().__init__(issue.message, original_exception)
        self.issue = issue


class SubmissionError(QueryEngineError):
    """The remote service rejected the query at submission time. Never retried."""


class TransientPollError(QueryEngineError):
    """A single status check failed for a reason worth retrying (throttling, network)."""


class FetchErrorKind(Enum):
    MISSING = "missing"
    CORRUPT = "corrupt"
    ACCESS_DENIED = "access_denied"


class FetchError(QueryEngineError):
    """Result object could not be retrieved or decoded."""

    def __init__(self, kind: FetchErrorKind, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message, original_exception)
        self.kind = kind


class ResultCorruptError(FetchError):
    """Result object is truncated or malformed."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(FetchErrorKind.CORRUPT, message, original_exception)


class CacheStoreError(QueryEngineError):
    """Cache read/write failure. Callers treat it as a miss or a skipped write."""


class ResultSetConsumedError(QueryEngineError):
    """A ResultSet was iterated a second time."""


class ConfigError(QueryEngineError):
    """Invalid configuration value."""


class ErrorKind(Enum):
    """Stable classification tags carried by every terminal failure."""
    SUBMISSION_REJECTED = "submission_rejected"
    POLL_FAILED = "poll_failed"
    TABLE_NOT_FOUND = "table_not_found"
    PERMISSION_DENIED = "permission_denied"
    SYNTAX_ERROR = "syntax_error"
    EXECUTION_FAILED = "execution_failed"
    RESULT_MISSING = "result_missing"
    RESULT_CORRUPT = "result_corrupt"
    RESULT_ACCESS_DENIED = "result_access_denied"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def category(self) -> str:
        return _CATEGORIES[self]

    @classmethod
    def from_fetch_error(cls, error: FetchError) -> "ErrorKind":
        return {
            FetchErrorKind.MISSING: cls.RESULT_MISSING,
            FetchErrorKind.CORRUPT: cls.RESULT_CORRUPT,
            FetchErrorKind.ACCESS_DENIED: cls.RESULT_ACCESS_DENIED,
        }[error.kind]


_CATEGORIES = {
    ErrorKind.SUBMISSION_REJECTED: "SubmissionError",
    ErrorKind.POLL_FAILED: "TransientPollError",
    ErrorKind.TABLE_NOT_FOUND: "ExecutionFailure",
    ErrorKind.PERMISSION_DENIED: "ExecutionFailure",
    ErrorKind.SYNTAX_ERROR: "ExecutionFailure",
    ErrorKind.EXECUTION_FAILED: "ExecutionFailure",
    ErrorKind.RESULT_MISSING: "FetchError",
    ErrorKind.RESULT_CORRUPT: "FetchError",
    ErrorKind.RESULT_ACCESS_DENIED: "FetchError",
    ErrorKind.TIMEOUT: "Timeout",
    ErrorKind.CANCELLED: "Cancelled",
}
