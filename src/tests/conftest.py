import io
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from core.cache_data_model import (
    ExecutionHandle,
    ExecutionState,
    ExecutionStatistics,
    ExecutionStatus,
    QueryRequest,
)
from core.errors import FetchError, FetchErrorKind
from execution.client import ExecutionClient
from storage.provider import ObjectStoreProvider, ObjectStream


class ScriptedExecutionClient(ExecutionClient):
    """
    ExecutionClient driven by a list of poll responses. Each poll consumes the next
    item; the last item repeats forever. Items that are exceptions are raised.
    """

    def __init__(self, script=None, columns=None, submit_error: Optional[Exception] = None,
                 cancel_error: Optional[Exception] = None) -> None:
        self.script = list(script or [])
        self.columns = columns
        self.submit_error = submit_error
        self.cancel_error = cancel_error
        self.submitted: List[QueryRequest] = []
        self.reuse_minutes: List[Optional[int]] = []
        self.polls = 0
        self.cancelled: List[str] = []

    async def submit(self, request, result_reuse_minutes=None):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(request)
        self.reuse_minutes.append(result_reuse_minutes)
        return ExecutionHandle(execution_id=f"exec-{len(self.submitted)}")

    async def poll_status(self, handle):
        item = self.script[min(self.polls, len(self.script) - 1)]
        self.polls += 1
        if isinstance(item, Exception):
            raise item
        return ExecutionStatus(item.state, item.reason, item.result_location,
                               ExecutionStatistics(**vars(item.statistics)))

    async def cancel(self, handle):
        self.cancelled.append(handle.execution_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    async def result_columns(self, handle):
        return self.columns


class InMemoryObjectStore(ObjectStoreProvider):
    """Object store over a dict of uri -> bytes. declared_lengths overrides ContentLength."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None) -> None:
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.declared_lengths: Dict[str, int] = {}
        self.denied: set = set()

    def get_object(self, uri: str) -> ObjectStream:
        if uri in self.denied:
            raise FetchError(FetchErrorKind.ACCESS_DENIED, f"Access denied to {uri}")
        if uri not in self.objects:
            raise FetchError(FetchErrorKind.MISSING, f"Result object not found: {uri}")
        data = self.objects[uri]
        return ObjectStream(uri, io.BytesIO(data), self.declared_lengths.get(uri, len(data)))

    def list_parts(self, uri_prefix: str) -> List[str]:
        if any(uri.startswith(uri_prefix) for uri in self.denied):
            raise FetchError(FetchErrorKind.ACCESS_DENIED, f"Access denied to {uri_prefix}")
        return sorted(uri for uri in self.objects
                      if uri.startswith(uri_prefix) and not uri.endswith(".metadata"))

    def download(self, uri: str, output_dir: Union[str, Path]) -> Path:
        stream = self.get_object(uri)
        target = Path(output_dir) / os.path.basename(uri)
        target.write_bytes(stream.body.read())
        return target


def status(state: ExecutionState, reason=None, result_location=None, **statistics) -> ExecutionStatus:
    return ExecutionStatus(state, reason, result_location, ExecutionStatistics(**statistics))


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def people_csv():
    return b'"id","name"\n"1","alice"\n"2","bob"\n'
