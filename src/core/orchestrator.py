import asyncio
import logging
import random
from typing import List, Optional, Sequence

from core.cache_data_model import (
    CacheEntry,
    CacheHit,
    ExecutionHandle,
    Failed,
    Fingerprint,
    QueryOutcome,
    QueryRequest,
    Success,
    ValidationRejected,
)
from core.cache_strategies import CacheStore
from core.config import CacheConfig, RunOptions
from core.errors import CacheStoreError, ErrorKind, FetchError, SqlValidationError, SubmissionError
from core.file_store import FileCacheStore
from execution.athena_client import AthenaExecutionClient
from execution.client import ExecutionClient
from execution.poller import ExecutionPoller
from sql.fingerprint import fingerprint
from sql.validator import SqlValidator
from storage.result_fetcher import ResultFetcher
from storage.result_set import ResultSet, schema_from_athena
from storage.s3_store import S3ObjectStore

logger = logging.getLogger(__name__)


class QueryOrchestrator:
    """
    Runs one query end to end: validate, fingerprint, serve from cache or execute,
    cache the successful execution and open its result.

    Cache problems never fail a query: a store error is logged and treated as a miss
    (on read) or a skipped write. A cached entry whose result object can no longer be
    fetched is ignored and the query is executed again.
    """

    def __init__(self,
                 execution_client: ExecutionClient,
                 cache_store: CacheStore,
                 result_fetcher: ResultFetcher,
                 validator: Optional[SqlValidator] = None,
                 options: Optional[RunOptions] = None,
                 rng: Optional[random.Random] = None) -> None:
        self.execution_client = execution_client
        self.cache_store = cache_store
        self.result_fetcher = result_fetcher
        self.validator = validator or SqlValidator()
        self.options = options or RunOptions()
        self.rng = rng

    @classmethod
    def from_config(cls, config: CacheConfig) -> "QueryOrchestrator":
        aws_config = config.boto3_kwargs()
        return cls(
            execution_client=AthenaExecutionClient(aws_config, default_output_location=config.output_location),
            cache_store=FileCacheStore(config.cache_directory, freshness_window=config.freshness_window),
            result_fetcher=ResultFetcher(S3ObjectStore(aws_config)),
            options=config.run,
        )

    async def run(self, request: QueryRequest,
                  options: Optional[RunOptions] = None,
                  cancel_event: Optional[asyncio.Event] = None) -> QueryOutcome:
        options = options or self.options
        deadline = asyncio.get_running_loop().time() + options.timeout

        try:
            self.validator.validate(request.sql)
        except SqlValidationError as e:
            logger.info(f"Query rejected by local validation: {e.issue.message}")
            return ValidationRejected(e.issue)

        fp = fingerprint(request)

        if options.use_cache:
            entry = self._lookup(fp, options)
            if entry is not None:
                try:
                    result_set = await self._fetch(entry, deadline)
                except FetchError as e:
                    logger.warning(f"Cached result for {fp.digest} is unusable, re-executing: {e}")
                except asyncio.TimeoutError:
                    return Failed(ErrorKind.TIMEOUT, "Timed out reading cached result", entry.execution_id)
                else:
                    self._touch(fp)
                    logger.info(f"Serving {fp.digest} from cache (execution {entry.execution_id})")
                    return CacheHit(entry, result_set)

        return await self._execute(request, fp, options, deadline, cancel_event)

    async def run_many(self, requests: Sequence[QueryRequest],
                       options: Optional[RunOptions] = None) -> List[QueryOutcome]:
        """Run independent queries concurrently, outcomes in request order"""
        return list(await asyncio.gather(*(self.run(request, options) for request in requests)))

    def run_sync(self, request: QueryRequest, options: Optional[RunOptions] = None) -> QueryOutcome:
        return asyncio.run(self.run(request, options))

    async def _execute(self, request: QueryRequest, fp: Fingerprint, options: RunOptions,
                       deadline: float, cancel_event: Optional[asyncio.Event]) -> QueryOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return Failed(ErrorKind.CANCELLED, "Query cancelled before submission")

        loop = asyncio.get_running_loop()
        try:
            handle = await asyncio.wait_for(
                self.execution_client.submit(request, options.result_reuse_minutes),
                timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            return Failed(ErrorKind.TIMEOUT, "Timed out submitting query")
        except SubmissionError as e:
            logger.error(f"Query submission failed: {e}")
            return Failed(ErrorKind.SUBMISSION_REJECTED, e.message)

        poller = ExecutionPoller.from_options(self.execution_client, options, rng=self.rng)
        outcome = await poller.wait(handle, deadline, cancel_event)
        if not outcome.succeeded:
            logger.error(f"Execution {handle.execution_id} ended {outcome.state.value}: {outcome.message}")
            return Failed(outcome.kind, outcome.message, handle.execution_id)

        status = outcome.status
        if not status.result_location:
            return Failed(ErrorKind.RESULT_MISSING,
                          f"Execution {handle.execution_id} reported no result location", handle.execution_id)

        entry = await self._build_entry(request, fp, handle, deadline)
        self._store(fp, entry)

        try:
            result_set = await self._fetch(entry, deadline)
        except FetchError as e:
            logger.error(f"Failed to fetch result of {handle.execution_id}: {e}")
            return Failed(ErrorKind.from_fetch_error(e), e.message, handle.execution_id)
        except asyncio.TimeoutError:
            return Failed(ErrorKind.TIMEOUT, "Timed out opening query result", handle.execution_id)
        return Success(entry, result_set, status.statistics)

    async def _build_entry(self, request: QueryRequest, fp: Fingerprint, handle: ExecutionHandle,
                           deadline: float) -> CacheEntry:
        status = handle.last_status
        loop = asyncio.get_running_loop()
        try:
            columns = await asyncio.wait_for(self.execution_client.result_columns(handle),
                                             timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            logger.warning(f"Timed out reading result metadata for {handle.execution_id}, caching without types")
            columns = None
        now = self.cache_store.clock()
        return CacheEntry(
            fingerprint=fp.digest,
            execution_id=handle.execution_id,
            result_location=status.result_location,
            row_count=status.statistics.output_rows,
            byte_size=status.statistics.output_bytes,
            created_at=now,
            last_accessed=now,
            database=request.database,
            workgroup=request.workgroup,
            sql=request.sql,
            columns=tuple(tuple(column) for column in columns) if columns else None,
        )

    async def _fetch(self, entry: CacheEntry, deadline: float) -> ResultSet:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        schema_hint = schema_from_athena(entry.columns) if entry.columns else None
        return await asyncio.wait_for(
            self.result_fetcher.fetch_async(entry.result_location, schema_hint, entry.row_count),
            timeout=remaining)

    def _lookup(self, fp: Fingerprint, options: RunOptions) -> Optional[CacheEntry]:
        try:
            return self.cache_store.lookup(fp, max_age=options.cache_freshness_window)
        except CacheStoreError as e:
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None

    def _store(self, fp: Fingerprint, entry: CacheEntry) -> None:
        try:
            self.cache_store.put(fp, entry)
        except CacheStoreError as e:
            logger.warning(f"Cache write skipped for {fp.digest}: {e}")

    def _touch(self, fp: Fingerprint) -> None:
        try:
            self.cache_store.touch(fp)
        except CacheStoreError as e:
            logger.warning(f"Could not update access time for {fp.digest}: {e}")
