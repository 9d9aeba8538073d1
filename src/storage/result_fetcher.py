import asyncio
import csv
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from core.cache_data_model import Column, ResultSchema
from core.errors import FetchError, FetchErrorKind, ResultCorruptError
from storage.provider import ObjectStoreProvider, ObjectStream
from storage.result_set import ResultSet

logger = logging.getLogger(__name__)

CSV_BLOCK_SIZE = 1 << 20
PARQUET_BATCH_SIZE = 10000
PARQUET_MAGIC = b"PAR1"


class ResultFormat(Enum):
    CSV = "csv"
    TEXT = "text"
    PARQUET = "parquet"


class _CountingReader(io.RawIOBase):
    """Counts bytes pulled from a remote body so truncation can be detected at EOF"""

    def __init__(self, body) -> None:
        self.body = body
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        data = self.body.read(len(buffer))
        n = len(data)
        buffer[:n] = data
        self.bytes_read += n
        return n


class _OpenPart:
    """A result object opened for decoding"""

    def __init__(self, stream: ObjectStream) -> None:
        self.stream = stream
        self.counter = _CountingReader(stream.body)
        self.reader = io.BufferedReader(self.counter, buffer_size=CSV_BLOCK_SIZE)

    def check_complete(self) -> None:
        expected = self.stream.content_length
        if expected is not None and self.counter.bytes_read != expected:
            raise ResultCorruptError(
                f"Truncated result object {self.stream.uri}: "
                f"read {self.counter.bytes_read} of {expected} bytes")

    def close(self) -> None:
        self.stream.close()


def detect_format(uri: str, head: bytes = b"") -> ResultFormat:
    lowered = uri.lower()
    if lowered.endswith(".csv") or lowered.endswith(".csv.gz"):
        return ResultFormat.CSV
    if lowered.endswith(".txt"):
        return ResultFormat.TEXT
    if lowered.endswith(".parquet") or head.startswith(PARQUET_MAGIC):
        return ResultFormat.PARQUET
    return ResultFormat.CSV


class ResultFetcher:
    """
    Retrieves query results from the object store and decodes them into a ResultSet.

    Athena query results are CSV with a header row, every value quoted and NULL written
    as an empty unquoted field. DDL and SHOW statements produce tab separated .txt
    output without a header. UNLOAD can produce Parquet parts. Multi-part results are
    concatenated in key order; every CSV part must carry the same header.
    """

    def __init__(self, object_store: ObjectStoreProvider, max_workers: int = 4) -> None:
        self.object_store = object_store
        self.executor = ThreadPoolExecutor(max_workers=max_workers)

    def fetch(self, location: str,
              schema_hint: Optional[ResultSchema] = None,
              expected_rows: Optional[int] = None,
              result_format: Optional[ResultFormat] = None) -> ResultSet:
        """
        Open the result at location. The first part is opened eagerly so a missing or
        unreadable result raises FetchError here; later parts are read on demand.
        """
        parts = self.object_store.list_parts(location)
        if not parts:
            raise FetchError(FetchErrorKind.MISSING, f"No result objects found at {location}")
        logger.info(f"Fetching {len(parts)} result part(s) from {location}")

        schema, first_batches = self._open_part(parts[0], schema_hint, result_format)
        batches = self._chain(first_batches, parts[1:], schema, schema_hint, result_format)
        return ResultSet(schema, batches, location=location, expected_rows=expected_rows)

    async def fetch_async(self, location: str,
                          schema_hint: Optional[ResultSchema] = None,
                          expected_rows: Optional[int] = None,
                          result_format: Optional[ResultFormat] = None) -> ResultSet:
        """Run the blocking open in the fetcher's thread pool"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor, self.fetch, location, schema_hint, expected_rows, result_format)

    def download(self, location: str, output_dir: Union[str, Path]) -> List[Path]:
        """Save the raw result object(s) under location into output_dir"""
        parts = self.object_store.list_parts(location)
        if not parts:
            raise FetchError(FetchErrorKind.MISSING, f"No result objects found at {location}")
        return [self.object_store.download(part, output_dir) for part in parts]

    def _chain(self, first: Iterator[pa.RecordBatch], rest: List[str], schema: ResultSchema,
               schema_hint: Optional[ResultSchema],
               result_format: Optional[ResultFormat]) -> Iterator[pa.RecordBatch]:
        yield from first
        for uri in rest:
            part_schema, batches = self._open_part(uri, schema_hint or schema, result_format)
            if part_schema.names != schema.names:
                raise ResultCorruptError(
                    f"Result part {uri} has columns {part_schema.names}, expected {schema.names}")
            yield from batches

    def _open_part(self, uri: str, schema_hint: Optional[ResultSchema],
                   result_format: Optional[ResultFormat]) -> Tuple[ResultSchema, Iterator[pa.RecordBatch]]:
        part = _OpenPart(self.object_store.get_object(uri))
        try:
            fmt = result_format or detect_format(uri, part.reader.peek(len(PARQUET_MAGIC))[:len(PARQUET_MAGIC)])
            if fmt == ResultFormat.PARQUET:
                return self._open_parquet(part, schema_hint)
            return self._open_delimited(part, schema_hint, fmt)
        except pa.ArrowException as e:
            part.close()
            raise ResultCorruptError(f"Malformed result object {uri}: {e}", e) from e
        except (UnicodeDecodeError, csv.Error) as e:
            part.close()
            raise ResultCorruptError(f"Malformed result header in {uri}: {e}", e) from e
        except BaseException:
            part.close()
            raise

    def _open_delimited(self, part: _OpenPart, schema_hint: Optional[ResultSchema],
                        fmt: ResultFormat) -> Tuple[ResultSchema, Iterator[pa.RecordBatch]]:
        if fmt == ResultFormat.TEXT:
            parse_options = pacsv.ParseOptions(delimiter="\t", quote_char=False)
            first_line = part.reader.peek(1)
            if not first_line:
                names = schema_hint.names if schema_hint else []
            else:
                width = len(part.reader.peek(CSV_BLOCK_SIZE).split(b"\n", 1)[0].split(b"\t"))
                names = schema_hint.names if schema_hint and len(schema_hint) == width \
                    else [f"_col{i}" for i in range(width)]
        else:
            parse_options = pacsv.ParseOptions(newlines_in_values=True)
            header = part.reader.readline()
            if not header:
                names = schema_hint.names if schema_hint else []
            else:
                names = next(csv.reader([header.decode("utf-8-sig").rstrip("\r\n")]))

        schema = self._resolve_schema(names, schema_hint)
        if not part.reader.peek(1):
            part.check_complete()
            part.close()
            return schema, iter(())

        reader = pacsv.open_csv(
            part.reader,
            read_options=pacsv.ReadOptions(column_names=names, block_size=CSV_BLOCK_SIZE, use_threads=False),
            parse_options=parse_options,
            convert_options=pacsv.ConvertOptions(
                column_types={c.name: c.type for c in schema.columns},
                strings_can_be_null=True,
                quoted_strings_can_be_null=False,
            ),
        )
        return schema, self._drain(part, reader)

    def _open_parquet(self, part: _OpenPart,
                      schema_hint: Optional[ResultSchema]) -> Tuple[ResultSchema, Iterator[pa.RecordBatch]]:
        # The footer sits at the end of the object, so a Parquet part is read whole
        data = part.reader.read()
        part.check_complete()
        part.close()
        parquet_file = pq.ParquetFile(pa.BufferReader(data))
        schema = ResultSchema.from_arrow(parquet_file.schema_arrow)
        return schema, self._parquet_batches(parquet_file, part.stream.uri)

    @staticmethod
    def _parquet_batches(parquet_file: pq.ParquetFile, uri: str) -> Iterator[pa.RecordBatch]:
        try:
            yield from parquet_file.iter_batches(batch_size=PARQUET_BATCH_SIZE)
        except pa.ArrowException as e:
            raise ResultCorruptError(f"Malformed Parquet data in {uri}: {e}", e) from e

    @staticmethod
    def _resolve_schema(names: List[str], schema_hint: Optional[ResultSchema]) -> ResultSchema:
        """Hinted types where the hint matches the header; otherwise everything is text"""
        if schema_hint is not None and schema_hint.names == names:
            return schema_hint
        if schema_hint is not None and names:
            logger.warning(f"Schema hint {schema_hint.names} does not match result header {names}, "
                           f"decoding as text")
        return ResultSchema(tuple(Column(name, pa.string()) for name in names))

    @staticmethod
    def _drain(part: _OpenPart, reader: pacsv.CSVStreamingReader) -> Iterator[pa.RecordBatch]:
        try:
            while True:
                try:
                    batch = reader.read_next_batch()
                except StopIteration:
                    break
                except pa.ArrowException as e:
                    raise ResultCorruptError(f"Malformed result object {part.stream.uri}: {e}", e) from e
                if batch.num_rows:
                    yield batch
            part.check_complete()
        finally:
            part.close()

    def __del__(self):
        """Cleanup thread pool on destruction"""
        if hasattr(self, 'executor'):
            self.executor.shutdown(wait=False)
