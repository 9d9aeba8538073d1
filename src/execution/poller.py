import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from core.cache_data_model import ExecutionHandle, ExecutionState, ExecutionStatus
from core.config import RunOptions
from core.errors import ErrorKind, QueryEngineError, TransientPollError
from execution.client import ExecutionClient, classify_failure

logger = logging.getLogger(__name__)


@dataclass
class PollOutcome:
    """Terminal result of driving an execution handle"""
    state: ExecutionState
    kind: Optional[ErrorKind] = None
    message: str = ""
    status: Optional[ExecutionStatus] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ExecutionState.SUCCEEDED


class BackoffSchedule:
    """Exponential backoff from floor to cap with multiplicative jitter"""

    def __init__(self, floor: float, cap: float, jitter: float = 0.2,
                 rng: Optional[random.Random] = None) -> None:
        self.floor = floor
        self.cap = cap
        self.jitter = jitter
        self.rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        base = min(self.cap, self.floor * (2 ** attempt))
        jittered = base * self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(self.floor, min(self.cap, jittered))


class ExecutionPoller:
    """
    Drives an ExecutionHandle through QUEUED -> RUNNING -> SUCCEEDED | FAILED | CANCELLED.

    Status checks are spaced by a BackoffSchedule and bounded by a deadline expressed in
    event loop time. On timeout, on caller cancellation and after too many consecutive
    transient errors the remote execution gets a best-effort cancel request; a failed
    cancel is logged and never raised.
    """

    def __init__(self, client: ExecutionClient,
                 floor: float = 0.5,
                 cap: float = 10.0,
                 jitter: float = 0.2,
                 max_poll_retries: int = 3,
                 rng: Optional[random.Random] = None,
                 cancel_timeout: float = 5.0) -> None:
        self.client = client
        self.backoff = BackoffSchedule(floor, cap, jitter, rng)
        self.max_poll_retries = max_poll_retries
        self.cancel_timeout = cancel_timeout

    @classmethod
    def from_options(cls, client: ExecutionClient, options: RunOptions,
                     rng: Optional[random.Random] = None) -> "ExecutionPoller":
        return cls(client,
                   floor=options.poll_interval_floor,
                   cap=options.poll_interval_cap,
                   jitter=options.poll_jitter,
                   max_poll_retries=options.max_poll_retries,
                   rng=rng)

    async def wait(self, handle: ExecutionHandle, deadline: float,
                   cancel_event: Optional[asyncio.Event] = None) -> PollOutcome:
        """Poll until terminal, deadline (loop.time() value) or cancellation"""
        try:
            return await self._poll_loop(handle, deadline, cancel_event)
        except asyncio.CancelledError:
            logger.info(f"Polling of {handle.execution_id} cancelled by caller")
            await self._cancel_remote(handle)
            raise

    async def _poll_loop(self, handle: ExecutionHandle, deadline: float,
                         cancel_event: Optional[asyncio.Event]) -> PollOutcome:
        loop = asyncio.get_running_loop()
        attempt = 0
        failures = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return await self._cancelled(handle)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return await self._timed_out(handle)

            try:
                status = await asyncio.wait_for(self.client.poll_status(handle), timeout=remaining)
            except asyncio.TimeoutError:
                return await self._timed_out(handle)
            except TransientPollError as e:
                failures += 1
                logger.warning(f"Status check {failures}/{self.max_poll_retries} failed for "
                               f"{handle.execution_id}: {e}")
                if failures > self.max_poll_retries:
                    await self._cancel_remote(handle)
                    return PollOutcome(ExecutionState.FAILED, ErrorKind.POLL_FAILED,
                                       f"Status checks failed {failures} times in a row: {e.message}")
            except QueryEngineError as e:
                logger.error(f"Status check for {handle.execution_id} failed: {e}")
                await self._cancel_remote(handle)
                return PollOutcome(ExecutionState.FAILED, ErrorKind.POLL_FAILED, e.message)
            else:
                failures = 0
                previous = handle.state
                if handle.advance(status):
                    logger.info(f"Execution {handle.execution_id}: {previous.value} -> {status.state.value}")
                if status.state.is_terminal:
                    return self._terminal(status)

            delay = min(self.backoff.delay(attempt), deadline - loop.time())
            attempt += 1
            if delay > 0 and await self._sleep(delay, cancel_event):
                return await self._cancelled(handle)

    @staticmethod
    async def _sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for delay seconds. Returns True if woken by cancellation."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _terminal(status: ExecutionStatus) -> PollOutcome:
        if status.state == ExecutionState.SUCCEEDED:
            return PollOutcome(ExecutionState.SUCCEEDED, status=status)
        if status.state == ExecutionState.CANCELLED:
            return PollOutcome(ExecutionState.CANCELLED, ErrorKind.CANCELLED,
                               status.reason or "Query was cancelled", status)
        message = status.reason or "Query failed without specific reason"
        return PollOutcome(ExecutionState.FAILED, classify_failure(status.reason), message, status)

    async def _timed_out(self, handle: ExecutionHandle) -> PollOutcome:
        logger.warning(f"Execution {handle.execution_id} did not finish before the deadline")
        await self._cancel_remote(handle)
        return PollOutcome(ExecutionState.FAILED, ErrorKind.TIMEOUT,
                           f"Query {handle.execution_id} timed out")

    async def _cancelled(self, handle: ExecutionHandle) -> PollOutcome:
        logger.info(f"Cancellation requested for {handle.execution_id}")
        await self._cancel_remote(handle)
        return PollOutcome(ExecutionState.CANCELLED, ErrorKind.CANCELLED,
                           f"Query {handle.execution_id} cancelled by caller")

    async def _cancel_remote(self, handle: ExecutionHandle) -> None:
        try:
            await asyncio.wait_for(self.client.cancel(handle), timeout=self.cancel_timeout)
        except Exception as e:
            logger.warning(f"Failed to cancel remote execution {handle.execution_id}: {e}")
