import asyncio
import random

import pytest

from conftest import ScriptedExecutionClient, status
from core.cache_data_model import ExecutionHandle, ExecutionState
from core.config import RunOptions
from core.errors import ErrorKind, QueryEngineError, TransientPollError
from execution.client import classify_failure
from execution.poller import BackoffSchedule, ExecutionPoller


def make_poller(client, **kwargs):
    kwargs.setdefault("floor", 0.01)
    kwargs.setdefault("cap", 0.02)
    return ExecutionPoller(client, rng=random.Random(42), **kwargs)


def deadline_in(seconds: float) -> float:
    return asyncio.get_running_loop().time() + seconds


class TestBackoffSchedule:

    def test_delays_stay_within_bounds(self):
        schedule = BackoffSchedule(floor=0.5, cap=10, jitter=0.2, rng=random.Random(1))
        for attempt in range(20):
            assert 0.5 <= schedule.delay(attempt) <= 10

    def test_doubles_until_cap_without_jitter(self):
        schedule = BackoffSchedule(floor=0.5, cap=4, jitter=0)
        assert [schedule.delay(n) for n in range(6)] == [0.5, 1, 2, 4, 4, 4]

    def test_jitter_varies_delay(self):
        schedule = BackoffSchedule(floor=1, cap=100, jitter=0.5, rng=random.Random(3))
        assert len({schedule.delay(3) for _ in range(10)}) > 1


class TestExecutionPoller:

    @pytest.mark.asyncio
    async def test_runs_to_success(self):
        client = ScriptedExecutionClient(script=[
            status(ExecutionState.QUEUED),
            status(ExecutionState.RUNNING),
            status(ExecutionState.SUCCEEDED, result_location="s3://bucket/out.csv"),
        ])
        handle = ExecutionHandle("exec-1")

        outcome = await make_poller(client).wait(handle, deadline_in(5))

        assert outcome.succeeded
        assert outcome.status.result_location == "s3://bucket/out.csv"
        assert handle.state == ExecutionState.SUCCEEDED
        assert [state for state, _ in handle.transitions] == [ExecutionState.RUNNING, ExecutionState.SUCCEEDED]
        assert client.cancelled == []

    @pytest.mark.asyncio
    async def test_failed_execution_is_classified(self):
        client = ScriptedExecutionClient(script=[
            status(ExecutionState.FAILED, reason="Access Denied (Service: Amazon S3; Status Code: 403)"),
        ])

        outcome = await make_poller(client).wait(ExecutionHandle("exec-1"), deadline_in(5))

        assert outcome.state == ExecutionState.FAILED
        assert outcome.kind == ErrorKind.PERMISSION_DENIED
        assert "Access Denied" in outcome.message

    @pytest.mark.asyncio
    async def test_remote_cancellation(self):
        client = ScriptedExecutionClient(script=[status(ExecutionState.CANCELLED)])

        outcome = await make_poller(client).wait(ExecutionHandle("exec-1"), deadline_in(5))

        assert outcome.state == ExecutionState.CANCELLED
        assert outcome.kind == ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        client = ScriptedExecutionClient(script=[
            TransientPollError("throttled"),
            TransientPollError("throttled"),
            status(ExecutionState.RUNNING),
            TransientPollError("throttled"),
            status(ExecutionState.SUCCEEDED, result_location="s3://bucket/out.csv"),
        ])

        outcome = await make_poller(client, max_poll_retries=2).wait(ExecutionHandle("exec-1"), deadline_in(5))

        assert outcome.succeeded
        assert client.polls == 5

    @pytest.mark.asyncio
    async def test_too_many_transient_errors(self):
        client = ScriptedExecutionClient(script=[TransientPollError("connection reset")])

        outcome = await make_poller(client, max_poll_retries=3).wait(ExecutionHandle("exec-1"), deadline_in(5))

        assert outcome.state == ExecutionState.FAILED
        assert outcome.kind == ErrorKind.POLL_FAILED
        assert client.polls == 4
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_rejected_status_check_is_not_retried(self):
        client = ScriptedExecutionClient(script=[QueryEngineError("Status check rejected (InvalidRequestException)")])

        outcome = await make_poller(client).wait(ExecutionHandle("exec-1"), deadline_in(5))

        assert outcome.kind == ErrorKind.POLL_FAILED
        assert client.polls == 1
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_deadline_cancels_remote_execution(self):
        client = ScriptedExecutionClient(script=[status(ExecutionState.RUNNING)])
        loop = asyncio.get_running_loop()
        deadline = deadline_in(0.2)

        outcome = await make_poller(client, cap=0.05).wait(ExecutionHandle("exec-1"), deadline)

        assert outcome.kind == ErrorKind.TIMEOUT
        assert loop.time() < deadline + 0.5
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_failed_cancel_is_not_raised(self):
        client = ScriptedExecutionClient(script=[status(ExecutionState.RUNNING)],
                                         cancel_error=RuntimeError("stop failed"))

        outcome = await make_poller(client).wait(ExecutionHandle("exec-1"), deadline_in(0.1))

        assert outcome.kind == ErrorKind.TIMEOUT
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_cancel_event(self):
        client = ScriptedExecutionClient(script=[status(ExecutionState.RUNNING)])
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel_event.set)

        outcome = await make_poller(client, floor=0.5, cap=0.5).wait(
            ExecutionHandle("exec-1"), deadline_in(5), cancel_event)

        assert outcome.state == ExecutionState.CANCELLED
        assert outcome.kind == ErrorKind.CANCELLED
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self):
        client = ScriptedExecutionClient(script=[status(ExecutionState.RUNNING)])
        task = asyncio.ensure_future(make_poller(client).wait(ExecutionHandle("exec-1"), deadline_in(5)))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert client.cancelled == ["exec-1"]

    @pytest.mark.asyncio
    async def test_from_options(self):
        options = RunOptions(poll_interval_floor=0.25, poll_interval_cap=2, poll_jitter=0, max_poll_retries=5)
        poller = ExecutionPoller.from_options(ScriptedExecutionClient(), options)

        assert poller.backoff.delay(0) == 0.25
        assert poller.backoff.delay(10) == 2
        assert poller.max_poll_retries == 5


class TestClassifyFailure:

    @pytest.mark.parametrize("reason,kind", [
        ("TABLE_NOT_FOUND: line 1:15: Table 'awsdatacatalog.db.t' does not exist", ErrorKind.TABLE_NOT_FOUND),
        ("SCHEMA_NOT_FOUND: line 1:15: Schema 'nope' does not exist", ErrorKind.TABLE_NOT_FOUND),
        ("Insufficient Lake Formation permission(s) on t", ErrorKind.PERMISSION_DENIED),
        ("Access Denied (Service: Amazon S3; Status Code: 403)", ErrorKind.PERMISSION_DENIED),
        ("SYNTAX_ERROR: line 1:8: Column 'x' cannot be resolved", ErrorKind.SYNTAX_ERROR),
        ("line 1:9: mismatched input 'FORM'", ErrorKind.SYNTAX_ERROR),
        ("GENERIC_INTERNAL_ERROR: Query exhausted resources", ErrorKind.EXECUTION_FAILED),
        (None, ErrorKind.EXECUTION_FAILED),
    ])
    def test_classify(self, reason, kind):
        assert classify_failure(reason) == kind
