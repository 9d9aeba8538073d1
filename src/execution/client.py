import re
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from core.cache_data_model import ExecutionHandle, ExecutionStatus, QueryRequest
from core.errors import ErrorKind


class ExecutionClient(ABC):
    """Interface for submitting queries to the remote execution service"""

    @abstractmethod
    async def submit(self, request: QueryRequest,
                     result_reuse_minutes: Optional[int] = None) -> ExecutionHandle:
        """Start an execution. Raises SubmissionError if the service rejects it."""
        pass

    @abstractmethod
    async def poll_status(self, handle: ExecutionHandle) -> ExecutionStatus:
        """Fetch the current status. Raises TransientPollError for retryable failures, QueryEngineError otherwise."""
        pass

    @abstractmethod
    async def cancel(self, handle: ExecutionHandle) -> None:
        """Request cancellation of a running execution"""
        pass

    async def result_columns(self, handle: ExecutionHandle) -> Optional[List[Tuple[str, str]]]:
        """(name, type) pairs of a succeeded execution's result, if the service exposes them"""
        return None


# Checked in order; first match wins
FAILURE_PATTERNS: Tuple[Tuple[ErrorKind, re.Pattern], ...] = (
    (ErrorKind.TABLE_NOT_FOUND, re.compile(
        r"TABLE_NOT_FOUND|SCHEMA_NOT_FOUND|ENTITY_NOT_FOUND|Table .* does not exist"
        r"|Schema .* does not exist|Database .* (?:does not exist|not found)", re.IGNORECASE)),
    (ErrorKind.PERMISSION_DENIED, re.compile(
        r"PERMISSION_DENIED|Access ?Denied|not authorized|insufficient (?:lake formation )?permission"
        r"|Forbidden", re.IGNORECASE)),
    (ErrorKind.SYNTAX_ERROR, re.compile(
        r"SYNTAX_ERROR|mismatched input|extraneous input|no viable alternative|TYPE_MISMATCH"
        r"|COLUMN_NOT_FOUND|cannot be applied to", re.IGNORECASE)),
)


def classify_failure(reason: Optional[str]) -> ErrorKind:
    """Map a remote failure message onto the execution failure sub-kinds"""
    if not reason:
        return ErrorKind.EXECUTION_FAILED
    for kind, pattern in FAILURE_PATTERNS:
        if pattern.search(reason):
            return kind
    return ErrorKind.EXECUTION_FAILED
