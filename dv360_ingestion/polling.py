"""
Submission and polling of asynchronous DV360 jobs.

Both remote job types (Bid Manager reports and SDF download tasks) follow the
same lifecycle: one creation call, then status checks until the job reports a
result location. The wait is bounded by ``Settings.poll_timeout`` and backs
off exponentially between checks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from dv360_ingestion.client import Dv360Client
from dv360_ingestion.config import Settings
from dv360_ingestion.errors import JobFailedError, JobTimeoutError, MissingParameterError

logger = logging.getLogger(__name__)

DEFAULT_DATA_RANGE = "LAST_7_DAYS"
REPORT_TITLE = "DV360 Feature Adoption Report"

REPORT_GROUP_BYS = [
    "FILTER_DATE",
    "FILTER_INSERTION_ORDER",
    "FILTER_LINE_ITEM",
    "FILTER_LINE_ITEM_STATUS",
    "FILTER_DEVICE_TYPE",
]

REPORT_METRICS = [
    "METRIC_IMPRESSIONS",
    "METRIC_BILLABLE_IMPRESSIONS",
    "METRIC_CLICKS",
    "METRIC_CTR",
    "METRIC_TOTAL_CONVERSIONS",
    "METRIC_LAST_CLICKS",
    "METRIC_LAST_IMPRESSIONS",
    "METRIC_REVENUE_USD",
    "METRIC_MEDIA_COST_USD",
]


class JobKind(str, Enum):
    REPORT = "report"
    SDF = "sdf"


class JobStatus(str, Enum):
    NOT_DONE = "not-done"
    DONE = "done"


@dataclass(frozen=True)
class Job:
    """Read-only projection of a remote job."""

    job_id: Any
    kind: JobKind
    status: JobStatus = JobStatus.NOT_DONE
    result_location: Optional[str] = None


def build_report_query(advertiser_id: Any, data_range: str = DEFAULT_DATA_RANGE) -> Dict[str, Any]:
    """Request body for a one-time, advertiser-scoped CSV report."""
    return {
        "metadata": {
            "title": REPORT_TITLE,
            "dataRange": {"range": data_range},
            "format": "CSV",
            "sendNotification": False,
        },
        "params": {
            "type": "STANDARD",
            "groupBys": list(REPORT_GROUP_BYS),
            "filters": [{"type": "FILTER_ADVERTISER", "value": str(advertiser_id)}],
            "metrics": list(REPORT_METRICS),
        },
        "schedule": {"frequency": "ONE_TIME"},
    }


def build_sdf_task(advertiser_id: Any, sdf_version: str) -> Dict[str, Any]:
    """Request body for a line item SDF export of one advertiser."""
    return {
        "version": sdf_version,
        "advertiserId": str(advertiser_id),
        "parentEntityFilter": {
            "fileType": ["FILE_TYPE_LINE_ITEM"],
            "filterType": "FILTER_TYPE_NONE",
        },
    }


class AsyncJobPoller:
    def __init__(self, client: Dv360Client, settings: Settings, sleep=asyncio.sleep):
        self.client = client
        self.settings = settings
        self._sleep = sleep

    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> Job:
        """
        Create a remote job.

        Args:
            kind: Report or SDF export
            params: Must contain ``advertiser_id``; report jobs also accept ``data_range``

        Raises:
            MissingParameterError: If no advertiser id is given (no remote call is made)
        """
        advertiser_id = params.get("advertiser_id")
        if advertiser_id is None or str(advertiser_id).strip() == "":
            raise MissingParameterError("Advertiser ID is required.")

        if kind is JobKind.REPORT:
            body = build_report_query(advertiser_id, params.get("data_range") or DEFAULT_DATA_RANGE)
            query = await self.client.create_query(body)
            query_id = query["queryId"]
            report = await self.client.run_query(query_id)
            report_id = report["key"]["reportId"]
            logger.info(f"Report job submitted (query {query_id}, report {report_id})")
            return Job(job_id=(query_id, report_id), kind=kind)

        body = build_sdf_task(advertiser_id, self.settings.sdf_version)
        operation = await self.client.create_sdf_task(body)
        logger.info(f"SDF job submitted ({operation['name']})")
        return Job(job_id=operation["name"], kind=kind)

    async def check(self, job: Job) -> Job:
        """Run one status check and return the job's current projection."""
        if job.kind is JobKind.REPORT:
            query_id, report_id = job.job_id
            report = await self.client.get_report(query_id, report_id)
            metadata = report.get("metadata", {})
            state = metadata.get("status", {}).get("state")
            if state == "FAILED":
                raise JobFailedError(f"Report {report_id} of query {query_id} failed")
            location = metadata.get("googleCloudStoragePath") or None
        else:
            operation = await self.client.get_operation(job.job_id)
            if operation.get("error"):
                raise JobFailedError(f"SDF task {job.job_id} failed: {operation['error']}")
            location = None
            if operation.get("done"):
                location = operation.get("response", {}).get("resourceName") or None

        if location:
            return Job(job_id=job.job_id, kind=job.kind, status=JobStatus.DONE, result_location=location)
        return job

    async def await_completion(self, job: Job) -> str:
        """
        Poll until the job is done and return its result location.

        Raises:
            JobTimeoutError: If the job is still running after ``poll_timeout`` seconds
            JobFailedError: If the remote system reports the job as failed
        """
        settings = self.settings
        delay = settings.poll_interval
        deadline = time.monotonic() + settings.poll_timeout
        attempt = 0

        while True:
            attempt += 1
            job = await self.check(job)
            if job.status is JobStatus.DONE:
                logger.info(f"{job.kind.value} job done after {attempt} checks: {job.result_location}")
                return job.result_location

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise JobTimeoutError(
                    f"{job.kind.value} job {job.job_id} not done after {attempt} checks "
                    f"({settings.poll_timeout}s timeout)"
                )

            # Last wait is clamped so the final check lands on the deadline
            wait = min(delay, remaining)
            logger.info(f"{job.kind.value} job not done yet (check {attempt}). Waiting {wait:.1f}s...")
            await self._sleep(wait)
            delay = min(delay * settings.poll_backoff, settings.poll_max_interval)
