"""
DV360 Feature Adoption Pipelines

Report pipeline:
  Bid Manager query (one-time, CSV) -> poll report -> stream CSV from Cloud
  Storage -> map to report rows -> append to dv360_feature_adoption.reports

SDF pipeline:
  SDF download task (line items) -> poll operation -> download zip -> extract
  first CSV -> map to SDF rows -> append to dv360_feature_adoption.sdfs

Each call is one sequential flow. The two pipelines share nothing and can run
separately or concurrently.

Usage:
    asyncio.run(run_report_pipeline("1234567", settings=Settings.from_dlt()))
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from dv360_ingestion.client import Dv360Client, create_session
from dv360_ingestion.config import Settings
from dv360_ingestion.errors import InvalidParameterError, MissingParameterError
from dv360_ingestion.fetch import StreamFetcher
from dv360_ingestion.mapping import REPORT_MAPPING, SDF_MAPPING, TableMapping, TransformStats, transform
from dv360_ingestion.polling import DEFAULT_DATA_RANGE, AsyncJobPoller, JobKind
from dv360_ingestion.sink import TableSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    table: str
    rows_inserted: int
    rows_dropped: int = 0

    @property
    def message(self) -> str:
        return (
            f"Inserted {self.rows_inserted} rows into {self.table} "
            f"({self.rows_dropped} malformed rows skipped)."
        )


def parse_advertiser_id(value: Any) -> int:
    """
    Validate the advertiser id of an invocation.

    Raises:
        MissingParameterError: If the id is absent or blank
        InvalidParameterError: If the id is not an integer
    """
    if value is None or str(value).strip() == "":
        raise MissingParameterError("Advertiser ID is required.")
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise InvalidParameterError(f"Advertiser ID must be numeric, got {value!r}") from e


async def run_report_pipeline(
    advertiser_id: Any,
    data_range: Optional[str] = None,
    *,
    settings: Settings,
    client: Optional[Dv360Client] = None,
    sink: Optional[TableSink] = None,
    today: Optional[date] = None,
    timeout: Optional[float] = None,
) -> PipelineResult:
    """
    Load the performance report of one advertiser into the reports table.

    ``timeout`` bounds job submission and polling only. Once rows start
    loading the run finishes, so a reported failure never leaves rows behind.
    """
    params = {
        "advertiser_id": parse_advertiser_id(advertiser_id),
        "data_range": data_range or DEFAULT_DATA_RANGE,
    }
    return await _run(
        JobKind.REPORT,
        params,
        REPORT_MAPPING,
        settings.report_table,
        archived=False,
        settings=settings,
        client=client,
        sink=sink,
        today=today,
        timeout=timeout,
    )


async def run_sdf_pipeline(
    advertiser_id: Any,
    *,
    settings: Settings,
    client: Optional[Dv360Client] = None,
    sink: Optional[TableSink] = None,
    today: Optional[date] = None,
    timeout: Optional[float] = None,
) -> PipelineResult:
    """Load the line item SDF of one advertiser into the sdfs table."""
    params = {"advertiser_id": parse_advertiser_id(advertiser_id)}
    return await _run(
        JobKind.SDF,
        params,
        SDF_MAPPING,
        settings.sdf_table,
        archived=True,
        settings=settings,
        client=client,
        sink=sink,
        today=today,
        timeout=timeout,
    )


async def _run(
    kind: JobKind,
    params: Dict[str, Any],
    mapping: TableMapping,
    table_name: str,
    archived: bool,
    settings: Settings,
    client: Optional[Dv360Client],
    sink: Optional[TableSink],
    today: Optional[date],
    timeout: Optional[float],
) -> PipelineResult:
    advertiser_id = params["advertiser_id"]
    sink = sink or TableSink(settings)
    session = None
    if client is None:
        session = create_session(settings)
        client = Dv360Client(settings, session)

    logger.info(f"Starting {kind.value} pipeline for advertiser {advertiser_id}")

    try:
        poller = AsyncJobPoller(client, settings)
        async with asyncio.timeout(timeout):
            job = await poller.submit(kind, params)
            location = await poller.await_completion(job)

        handle = sink.ensure_table(table_name, mapping.columns(), mapping.partition_field)
        stats = TransformStats()

        async with StreamFetcher(client).open(location, archived=archived) as stream:
            rows = transform(stream, mapping, advertiser_id, imported_at=today, stats=stats)
            # dlt loads synchronously; keep the event loop free meanwhile
            inserted = await asyncio.to_thread(sink.insert_all, handle, rows)
    finally:
        if session is not None:
            await session.close()

    result = PipelineResult(table=table_name, rows_inserted=inserted, rows_dropped=stats.dropped)
    logger.info(f"{kind.value} pipeline for advertiser {advertiser_id} done: {result.message}")
    return result
