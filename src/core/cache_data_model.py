import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pyarrow as pa

from core.errors import ErrorKind, ValidationCategory

CACHE_RECORD_FORMAT_VERSION = 1
DEFAULT_CATALOG = "AwsDataCatalog"


class ExecutionState(Enum):
    """States of a remote query execution"""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.CANCELLED)


@dataclass(frozen=True)
class QueryRequest:
    """A single query invocation and the context it runs in"""
    sql: str
    database: str
    workgroup: str = "primary"
    output_location: Optional[str] = None
    catalog: str = DEFAULT_CATALOG


@dataclass(frozen=True)
class Fingerprint:
    """Digest identifying a cacheable query plus its execution context"""
    digest: str
    policy_version: int

    def __str__(self) -> str:
        return self.digest


@dataclass
class ExecutionStatistics:
    data_scanned_bytes: Optional[int] = None
    engine_execution_ms: Optional[int] = None
    output_rows: Optional[int] = None
    output_bytes: Optional[int] = None
    reused_previous_result: bool = False


@dataclass
class ExecutionStatus:
    """One status report from the execution service"""
    state: ExecutionState
    reason: Optional[str] = None
    result_location: Optional[str] = None
    statistics: ExecutionStatistics = field(default_factory=ExecutionStatistics)


@dataclass
class ExecutionHandle:
    """Opaque execution identifier plus the state the poller has observed so far"""
    execution_id: str
    state: ExecutionState = ExecutionState.QUEUED
    last_status: Optional[ExecutionStatus] = None
    transitions: List[Tuple[ExecutionState, float]] = field(default_factory=list)
    submitted_at: float = field(default_factory=time.time)

    def advance(self, status: ExecutionStatus) -> bool:
        """Record a status report. Returns True if the state changed."""
        self.last_status = status
        if status.state == self.state:
            return False
        if self.state.is_terminal:
            raise ValueError(f"Execution {self.execution_id} already terminal ({self.state.value})")
        self.transitions.append((status.state, time.time()))
        self.state = status.state
        return True


@dataclass(frozen=True)
class CacheEntry:
    """Persistent record of a successful execution and where its result lives"""
    fingerprint: str
    execution_id: str
    result_location: str
    status: ExecutionState = ExecutionState.SUCCEEDED
    row_count: Optional[int] = None
    byte_size: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)
    database: str = ""
    workgroup: str = ""
    sql: str = ""
    columns: Optional[Tuple[Tuple[str, str], ...]] = None

    def __post_init__(self):
        if self.status != ExecutionState.SUCCEEDED:
            raise ValueError(f"Only succeeded executions are cacheable, got {self.status.value}")

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def is_fresh(self, max_age: float, now: Optional[float] = None) -> bool:
        return self.age(now) <= max_age

    def touched(self, now: Optional[float] = None) -> "CacheEntry":
        """Copy with last_accessed refreshed"""
        return dataclasses.replace(self, last_accessed=time.time() if now is None else now)

    def to_dict(self) -> Dict[str, Any]:
        record = dataclasses.asdict(self)
        record["status"] = self.status.value
        record["format_version"] = CACHE_RECORD_FORMAT_VERSION
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "CacheEntry":
        if not isinstance(record, dict):
            raise TypeError(f"Cache record must be a mapping, got {type(record).__name__}")
        # Unknown keys come from newer writers and are dropped
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in record.items() if k in known}
        values["status"] = ExecutionState(values.get("status", ExecutionState.SUCCEEDED.value))
        if values.get("columns") is not None:
            values["columns"] = tuple(tuple(column) for column in values["columns"])
        return cls(**values)


@dataclass(frozen=True)
class Column:
    name: str
    type: pa.DataType


@dataclass(frozen=True)
class ResultSchema:
    """Ordered column names with declared types"""
    columns: Tuple[Column, ...]

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def __len__(self) -> int:
        return len(self.columns)

    def to_arrow(self) -> pa.Schema:
        return pa.schema([pa.field(c.name, c.type) for c in self.columns])

    @classmethod
    def from_arrow(cls, schema: pa.Schema) -> "ResultSchema":
        return cls(tuple(Column(f.name, f.type) for f in schema))


@dataclass(frozen=True)
class ValidationIssue:
    category: ValidationCategory
    message: str
    token: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    suggestion: Optional[str] = None


class QueryOutcome:
    """Base of the values returned by QueryOrchestrator.run"""
    ok: bool = False


@dataclass
class CacheHit(QueryOutcome):
    entry: CacheEntry
    result_set: Any
    ok: bool = True


@dataclass
class Success(QueryOutcome):
    entry: CacheEntry
    result_set: Any
    statistics: Optional[ExecutionStatistics] = None
    ok: bool = True


@dataclass
class Failed(QueryOutcome):
    kind: ErrorKind
    message: str
    execution_id: Optional[str] = None


@dataclass
class ValidationRejected(QueryOutcome):
    reason: ValidationIssue
