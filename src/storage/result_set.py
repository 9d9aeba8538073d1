import logging
import re
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from core.cache_data_model import Column, ResultSchema
from core.errors import ResultCorruptError, ResultSetConsumedError

logger = logging.getLogger(__name__)

_SIMPLE_TYPES = {
    "boolean": pa.bool_(),
    "tinyint": pa.int8(),
    "smallint": pa.int16(),
    "integer": pa.int32(),
    "int": pa.int32(),
    "bigint": pa.int64(),
    "real": pa.float32(),
    "float": pa.float32(),
    "double": pa.float64(),
    "date": pa.date32(),
    "timestamp": pa.timestamp("ms"),
}
_DECIMAL = re.compile(r"^decimal\s*\(\s*(\d+)\s*,\s*(\d+)\s*\)$")


def athena_type_to_arrow(type_name: str) -> pa.DataType:
    """Map an Athena column type name to the Arrow type used when decoding results"""
    name = type_name.strip().lower()
    if name in _SIMPLE_TYPES:
        return _SIMPLE_TYPES[name]
    decimal = _DECIMAL.match(name)
    if decimal:
        return pa.decimal128(int(decimal.group(1)), int(decimal.group(2)))
    # varchar, char, string, json, arrays, maps, rows, intervals... arrive as text
    return pa.string()


def schema_from_athena(columns: Iterable[Sequence[str]]) -> ResultSchema:
    """Build a ResultSchema from (name, athena_type) pairs"""
    return ResultSchema(tuple(Column(name, athena_type_to_arrow(type_name)) for name, type_name in columns))


class ResultSet:
    """
    Lazy, single-pass view over a decoded query result.

    Rows are produced batch by batch as the underlying objects are read, so taking
    the first rows does not download the whole result. Iterating a second time raises
    ResultSetConsumedError; fetch again to re-read.

    If expected_rows is known (from the execution statistics) and the decoded row
    count differs once the data is exhausted, ResultCorruptError is raised instead of
    ending normally.
    """

    def __init__(self, schema: ResultSchema, batches: Iterator[pa.RecordBatch],
                 location: str = "", expected_rows: Optional[int] = None) -> None:
        self.schema = schema
        self.location = location
        self.expected_rows = expected_rows
        self.rows_read = 0
        self._batches = batches
        self._consumed = False

    @property
    def column_names(self) -> List[str]:
        return self.schema.names

    def iter_batches(self) -> Iterator[pa.RecordBatch]:
        if self._consumed:
            raise ResultSetConsumedError(f"ResultSet for {self.location} was already consumed")
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[pa.RecordBatch]:
        for batch in self._batches:
            self.rows_read += batch.num_rows
            yield batch

        if self.expected_rows is not None and self.rows_read != self.expected_rows:
            raise ResultCorruptError(
                f"Result {self.location} has {self.rows_read} rows, expected {self.expected_rows}")
        logger.info(f"Read {self.rows_read} rows from {self.location}")

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        for batch in self.iter_batches():
            columns = [column.to_pylist() for column in batch.columns]
            yield from zip(*columns)

    def head(self, n: int) -> List[Tuple[Any, ...]]:
        """First n rows. Consumes the ResultSet."""
        rows: List[Tuple[Any, ...]] = []
        if n <= 0:
            self._consumed = True
            return rows
        for row in self:
            rows.append(row)
            if len(rows) >= n:
                break
        return rows

    def to_arrow(self) -> pa.Table:
        return pa.Table.from_batches(list(self.iter_batches()), schema=self.schema.to_arrow())

    def to_pylist(self) -> List[Tuple[Any, ...]]:
        return list(self)

    def write_csv(self, path: Union[str, Path]) -> int:
        """Stream the remaining rows into a local CSV file. Returns rows written."""
        written = 0
        with pacsv.CSVWriter(str(path), self.schema.to_arrow()) as writer:
            for batch in self.iter_batches():
                writer.write_batch(batch)
                written += batch.num_rows
        return written

    def write_parquet(self, path: Union[str, Path]) -> int:
        written = 0
        with pq.ParquetWriter(str(path), self.schema.to_arrow()) as writer:
            for batch in self.iter_batches():
                writer.write_batch(batch)
                written += batch.num_rows
        return written

    def close(self) -> None:
        self._consumed = True
        close = getattr(self._batches, "close", None)
        if close is not None:
            close()
