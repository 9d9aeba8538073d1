from concurrent.futures import ThreadPoolExecutor
from unittest.mock import ANY, Mock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from core.cache_data_model import ExecutionHandle, ExecutionState, QueryRequest
from core.errors import QueryEngineError, SubmissionError, TransientPollError
from execution.athena_client import AthenaExecutionClient


@pytest.fixture
def aws_config():
    return {
        'aws_access_key_id': 'test_key',
        'aws_secret_access_key': 'test_secret',
        'region_name': 'us-east-1'
    }


@pytest.fixture
def request_d():
    return QueryRequest(sql="SELECT * FROM t", database="d", workgroup="w",
                        output_location="s3://results/")


def execution_response(state, reason=None, location="s3://results/abc.csv", error_message=None):
    status = {'State': state}
    if reason:
        status['StateChangeReason'] = reason
    if error_message:
        status['AthenaError'] = {'ErrorCategory': 2, 'ErrorMessage': error_message}
    return {
        'QueryExecution': {
            'QueryExecutionId': 'abc',
            'Status': status,
            'ResultConfiguration': {'OutputLocation': location},
            'Statistics': {
                'DataScannedInBytes': 1024,
                'EngineExecutionTimeInMillis': 321,
                'ResultReuseInformation': {'ReusedPreviousResult': True},
            },
        }
    }


@pytest.fixture
def mock_athena():
    with patch('boto3.client') as mock_boto_client:
        client = Mock()
        mock_boto_client.return_value = client
        yield client


class TestAthenaExecutionClient:
    """Test suite for AthenaExecutionClient"""

    @patch('boto3.client')
    def test_init(self, mock_boto_client, aws_config):
        client = AthenaExecutionClient(aws_config, max_workers=8)

        mock_boto_client.assert_called_once_with('athena', **aws_config)
        assert isinstance(client.executor, ThreadPoolExecutor)
        assert client.executor._max_workers == 8

    @pytest.mark.asyncio
    async def test_submit(self, mock_athena, aws_config, request_d):
        mock_athena.start_query_execution.return_value = {'QueryExecutionId': 'abc'}
        client = AthenaExecutionClient(aws_config)

        handle = await client.submit(request_d)

        assert handle.execution_id == 'abc'
        assert handle.state == ExecutionState.QUEUED
        mock_athena.start_query_execution.assert_called_once_with(
            QueryString="SELECT * FROM t",
            QueryExecutionContext={'Database': 'd', 'Catalog': 'AwsDataCatalog'},
            WorkGroup='w',
            ClientRequestToken=ANY,
            ResultConfiguration={'OutputLocation': 's3://results/'},
        )

    @pytest.mark.asyncio
    async def test_submit_with_result_reuse(self, mock_athena, aws_config):
        mock_athena.start_query_execution.return_value = {'QueryExecutionId': 'abc'}
        client = AthenaExecutionClient(aws_config, default_output_location="s3://default/")

        await client.submit(QueryRequest(sql="SELECT 1", database="d"), result_reuse_minutes=60)

        kwargs = mock_athena.start_query_execution.call_args.kwargs
        assert kwargs['ResultConfiguration'] == {'OutputLocation': 's3://default/'}
        assert kwargs['ResultReuseConfiguration'] == {
            'ResultReuseByAgeConfiguration': {'Enabled': True, 'MaxAgeInMinutes': 60}
        }

    @pytest.mark.asyncio
    async def test_submit_rejected(self, mock_athena, aws_config, request_d):
        mock_athena.start_query_execution.side_effect = ClientError(
            {'Error': {'Code': 'InvalidRequestException', 'Message': 'WorkGroup w is not found'}},
            'StartQueryExecution')
        client = AthenaExecutionClient(aws_config)

        with pytest.raises(SubmissionError) as exc_info:
            await client.submit(request_d)
        assert "InvalidRequestException" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_poll_running(self, mock_athena, aws_config):
        mock_athena.get_query_execution.return_value = execution_response('RUNNING')
        client = AthenaExecutionClient(aws_config)

        status = await client.poll_status(ExecutionHandle('abc'))

        assert status.state == ExecutionState.RUNNING
        assert status.statistics.data_scanned_bytes == 1024
        mock_athena.get_query_runtime_statistics.assert_not_called()

    @pytest.mark.asyncio
    async def test_poll_succeeded_adds_output_statistics(self, mock_athena, aws_config):
        mock_athena.get_query_execution.return_value = execution_response('SUCCEEDED')
        mock_athena.get_query_runtime_statistics.return_value = {
            'QueryRuntimeStatistics': {'Rows': {'InputRows': 100, 'OutputRows': 7, 'OutputBytes': 210}}
        }
        client = AthenaExecutionClient(aws_config)

        status = await client.poll_status(ExecutionHandle('abc'))

        assert status.state == ExecutionState.SUCCEEDED
        assert status.result_location == "s3://results/abc.csv"
        assert status.statistics.output_rows == 7
        assert status.statistics.output_bytes == 210
        assert status.statistics.reused_previous_result is True

    @pytest.mark.asyncio
    async def test_poll_succeeded_without_runtime_statistics(self, mock_athena, aws_config):
        mock_athena.get_query_execution.return_value = execution_response('SUCCEEDED')
        mock_athena.get_query_runtime_statistics.side_effect = ClientError(
            {'Error': {'Code': 'InvalidRequestException'}}, 'GetQueryRuntimeStatistics')
        client = AthenaExecutionClient(aws_config)

        status = await client.poll_status(ExecutionHandle('abc'))

        assert status.state == ExecutionState.SUCCEEDED
        assert status.statistics.output_rows is None

    @pytest.mark.asyncio
    async def test_poll_failed_reason(self, mock_athena, aws_config):
        mock_athena.get_query_execution.return_value = execution_response(
            'FAILED', error_message="TABLE_NOT_FOUND: Table 'd.t' does not exist")
        client = AthenaExecutionClient(aws_config)

        status = await client.poll_status(ExecutionHandle('abc'))

        assert status.state == ExecutionState.FAILED
        assert status.reason == "TABLE_NOT_FOUND: Table 'd.t' does not exist"

    @pytest.mark.asyncio
    async def test_poll_throttled_is_transient(self, mock_athena, aws_config):
        mock_athena.get_query_execution.side_effect = ClientError(
            {'Error': {'Code': 'ThrottlingException'}}, 'GetQueryExecution')
        client = AthenaExecutionClient(aws_config)

        with pytest.raises(TransientPollError):
            await client.poll_status(ExecutionHandle('abc'))

    @pytest.mark.asyncio
    async def test_poll_connection_error_is_transient(self, mock_athena, aws_config):
        mock_athena.get_query_execution.side_effect = EndpointConnectionError(
            endpoint_url="https://athena.us-east-1.amazonaws.com")
        client = AthenaExecutionClient(aws_config)

        with pytest.raises(TransientPollError):
            await client.poll_status(ExecutionHandle('abc'))

    @pytest.mark.asyncio
    async def test_poll_rejected_is_not_transient(self, mock_athena, aws_config):
        mock_athena.get_query_execution.side_effect = ClientError(
            {'Error': {'Code': 'InvalidRequestException'}}, 'GetQueryExecution')
        client = AthenaExecutionClient(aws_config)

        with pytest.raises(QueryEngineError) as exc_info:
            await client.poll_status(ExecutionHandle('abc'))
        assert not isinstance(exc_info.value, TransientPollError)

    @pytest.mark.asyncio
    async def test_result_columns(self, mock_athena, aws_config):
        mock_athena.get_query_results.return_value = {
            'ResultSet': {
                'Rows': [],
                'ResultSetMetadata': {'ColumnInfo': [
                    {'Name': 'id', 'Type': 'integer'},
                    {'Name': 'amount', 'Type': 'decimal', 'Precision': 10, 'Scale': 2},
                    {'Name': 'label', 'Type': 'varchar'},
                ]},
            }
        }
        client = AthenaExecutionClient(aws_config)

        columns = await client.result_columns(ExecutionHandle('abc'))

        assert columns == [('id', 'integer'), ('amount', 'decimal(10,2)'), ('label', 'varchar')]
        mock_athena.get_query_results.assert_called_once_with(QueryExecutionId='abc', MaxResults=1)

    @pytest.mark.asyncio
    async def test_cancel(self, mock_athena, aws_config):
        mock_athena.stop_query_execution.return_value = {}
        client = AthenaExecutionClient(aws_config)

        await client.cancel(ExecutionHandle('abc'))

        mock_athena.stop_query_execution.assert_called_once_with(QueryExecutionId='abc')
