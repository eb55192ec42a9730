"""
Destination tables for the DV360 feature adoption pipelines.

Loading goes through a dlt pipeline (BigQuery destination by default). Tables
are append-only, declared with explicit column hints and day partitioning on
``imported_at``. dlt creates a table on the first load if it does not exist
and leaves an existing table untouched.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional

import dlt
from dlt.common.pipeline import LoadInfo
from dlt.destinations.adapters import bigquery_adapter

from dv360_ingestion.config import Settings
from dv360_ingestion.errors import Dv360Error, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableHandle:
    name: str
    columns: Dict[str, Dict[str, Any]]
    partition_field: str


class TableSink:
    def __init__(self, settings: Settings, pipeline: Optional[dlt.Pipeline] = None):
        self.settings = settings
        self._pipeline = pipeline
        self._tables: Dict[str, TableHandle] = {}
        self._lock = threading.Lock()

    @property
    def pipeline(self) -> dlt.Pipeline:
        if self._pipeline is None:
            destination = self.settings.destination
            if destination == "bigquery":
                destination = dlt.destinations.bigquery(location=self.settings.location)
            self._pipeline = dlt.pipeline(
                pipeline_name=self.settings.dataset_name,
                destination=destination,
                dataset_name=self.settings.dataset_name,
            )
        return self._pipeline

    def ensure_table(self, name: str, columns: Dict[str, Dict[str, Any]], partition_field: str) -> TableHandle:
        """
        Get-or-create the table declaration.

        A table already known to this sink is returned unchanged; the declared
        columns are not compared against it.
        """
        handle = self._tables.get(name)
        if handle is not None:
            return handle

        if partition_field not in columns:
            raise ValueError(f"Partition field {partition_field} is not a column of {name}")

        handle = TableHandle(name=name, columns=dict(columns), partition_field=partition_field)
        self._tables[name] = handle
        logger.info(f"Declared table {self.settings.dataset_name}.{name} (partitioned by {partition_field})")
        return handle

    def insert_all(self, handle: TableHandle, rows: Iterable[Dict[str, Any]]) -> int:
        """
        Append ``rows`` to the table in a single pipeline run.

        Rows are pulled lazily while dlt extracts them to local load files, so
        the full result set never has to sit in memory.

        Returns:
            Number of rows inserted

        Raises:
            TransportError: If extraction or loading fails
        """
        counter = _RowCounter(rows)
        resource = dlt.resource(
            iter(counter),
            name=handle.name,
            table_name=handle.name,
            write_disposition="append",
            columns=handle.columns,
        )
        resource = bigquery_adapter(resource, partition=handle.partition_field)

        logger.info(f"Loading rows into {self.settings.dataset_name}.{handle.name}...")
        try:
            # One dlt working directory per pipeline: runs must not overlap
            with self._lock:
                load_info: LoadInfo = self.pipeline.run(resource)
        except Exception as e:
            # dlt wraps errors raised while pulling rows (PipelineStepFailed,
            # ResourceExtractionError); surface ours unchanged
            cause = _pipeline_error(e)
            if cause is not None:
                raise cause from e
            raise TransportError(f"Load into {handle.name} failed: {e}") from e

        if load_info.has_failed_jobs:
            logger.error(f"Load into {handle.name} has failed jobs:\n{load_info}")
            raise TransportError(f"Load into {handle.name} completed with failed jobs")

        logger.info(f"Inserted {counter.count} rows into {self.settings.dataset_name}.{handle.name}")
        return counter.count


class _RowCounter:
    """Pass-through iterable that counts the rows dlt pulls from it."""

    def __init__(self, rows: Iterable[Dict[str, Any]]):
        self._rows = rows
        self.count = 0

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        for row in self._rows:
            self.count += 1
            yield row


def _pipeline_error(exc: BaseException) -> Optional[Dv360Error]:
    """Find a pipeline error (e.g. StructuralStreamError) wrapped by dlt, if any."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, Dv360Error):
            return current
        seen.add(id(current))
        current = getattr(current, "exception", None) or current.__cause__ or current.__context__
    return None
