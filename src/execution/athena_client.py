import asyncio
import functools
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from core.cache_data_model import (
    ExecutionHandle,
    ExecutionState,
    ExecutionStatistics,
    ExecutionStatus,
    QueryRequest,
)
from core.errors import QueryEngineError, SubmissionError, TransientPollError
from execution.client import ExecutionClient

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "InternalServerException",
    "ServiceUnavailableException",
    "RequestTimeout",
})


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class AthenaExecutionClient(ExecutionClient):
    """ExecutionClient backed by the boto3 Athena API. Blocking calls run in a thread pool."""

    def __init__(self, aws_config: Dict[str, Any], max_workers: int = 4,
                 default_output_location: Optional[str] = None) -> None:
        self.athena_client = boto3.client('athena', **aws_config)
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self.default_output_location = default_output_location

    async def _call(self, method: str, **kwargs) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        bound = functools.partial(getattr(self.athena_client, method), **kwargs)
        return await loop.run_in_executor(self.executor, bound)

    def _start_params(self, request: QueryRequest, result_reuse_minutes: Optional[int]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'QueryString': request.sql,
            'QueryExecutionContext': {'Database': request.database, 'Catalog': request.catalog},
            'WorkGroup': request.workgroup,
            'ClientRequestToken': str(uuid.uuid4()),
        }
        output_location = request.output_location or self.default_output_location
        if output_location:
            params['ResultConfiguration'] = {'OutputLocation': output_location}
        if result_reuse_minutes:
            params['ResultReuseConfiguration'] = {
                'ResultReuseByAgeConfiguration': {
                    'Enabled': True,
                    'MaxAgeInMinutes': int(result_reuse_minutes),
                }
            }
        return params

    async def submit(self, request: QueryRequest,
                     result_reuse_minutes: Optional[int] = None) -> ExecutionHandle:
        try:
            response = await self._call('start_query_execution',
                                        **self._start_params(request, result_reuse_minutes))
        except ClientError as e:
            logger.error(f"Athena rejected query submission: {e}")
            raise SubmissionError(f"Query submission rejected ({_error_code(e)})", e) from e
        except (EndpointConnectionError, ReadTimeoutError) as e:
            logger.error(f"Could not reach Athena to submit query: {e}")
            raise SubmissionError("Could not reach the Athena endpoint", e) from e

        execution_id = response['QueryExecutionId']
        logger.info(f"Submitted query execution {execution_id} to workgroup {request.workgroup}")
        return ExecutionHandle(execution_id=execution_id)

    async def poll_status(self, handle: ExecutionHandle) -> ExecutionStatus:
        try:
            response = await self._call('get_query_execution', QueryExecutionId=handle.execution_id)
        except ClientError as e:
            if _error_code(e) in TRANSIENT_ERROR_CODES:
                raise TransientPollError(f"Status check throttled for {handle.execution_id}", e) from e
            logger.error(f"Status check rejected for {handle.execution_id}: {e}")
            raise QueryEngineError(f"Status check rejected ({_error_code(e)})", e) from e
        except (EndpointConnectionError, ReadTimeoutError) as e:
            raise TransientPollError(f"Status check failed for {handle.execution_id}", e) from e

        status = self.parse_execution(response['QueryExecution'])
        if status.state == ExecutionState.SUCCEEDED:
            await self._add_runtime_statistics(handle, status.statistics)
        return status

    async def _add_runtime_statistics(self, handle: ExecutionHandle, statistics: ExecutionStatistics) -> None:
        """Output row and byte counts are only exposed by the runtime statistics API"""
        try:
            response = await self._call('get_query_runtime_statistics', QueryExecutionId=handle.execution_id)
        except (ClientError, EndpointConnectionError, ReadTimeoutError) as e:
            logger.warning(f"Runtime statistics unavailable for {handle.execution_id}: {e}")
            return
        rows = response.get('QueryRuntimeStatistics', {}).get('Rows', {})
        statistics.output_rows = rows.get('OutputRows')
        statistics.output_bytes = rows.get('OutputBytes')

    @staticmethod
    def parse_execution(execution: Dict[str, Any]) -> ExecutionStatus:
        status = execution.get('Status', {})
        stats = execution.get('Statistics', {})
        reuse = stats.get('ResultReuseInformation', {})
        reason = status.get('StateChangeReason')
        error = status.get('AthenaError', {})
        if error.get('ErrorMessage') and not reason:
            reason = error['ErrorMessage']

        return ExecutionStatus(
            state=ExecutionState(status.get('State', 'QUEUED')),
            reason=reason,
            result_location=execution.get('ResultConfiguration', {}).get('OutputLocation'),
            statistics=ExecutionStatistics(
                data_scanned_bytes=stats.get('DataScannedInBytes'),
                engine_execution_ms=stats.get('EngineExecutionTimeInMillis'),
                reused_previous_result=bool(reuse.get('ReusedPreviousResult', False)),
            ),
        )

    async def result_columns(self, handle: ExecutionHandle) -> Optional[List[Tuple[str, str]]]:
        try:
            response = await self._call('get_query_results', QueryExecutionId=handle.execution_id, MaxResults=1)
        except (ClientError, EndpointConnectionError, ReadTimeoutError) as e:
            logger.warning(f"Result metadata unavailable for {handle.execution_id}: {e}")
            return None
        column_info = response.get('ResultSet', {}).get('ResultSetMetadata', {}).get('ColumnInfo', [])
        columns = []
        for column in column_info:
            type_name = column.get('Type', 'varchar')
            if type_name == 'decimal' and 'Precision' in column:
                type_name = f"decimal({column['Precision']},{column.get('Scale', 0)})"
            columns.append((column['Name'], type_name))
        return columns or None

    async def cancel(self, handle: ExecutionHandle) -> None:
        await self._call('stop_query_execution', QueryExecutionId=handle.execution_id)
        logger.info(f"Requested cancellation of {handle.execution_id}")

    def __del__(self):
        """Cleanup thread pool on destruction"""
        if hasattr(self, 'executor'):
            self.executor.shutdown(wait=False)
