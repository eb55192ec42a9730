"""
Pytest configuration and shared fixtures for the DV360 pipeline tests.

Remote APIs and the dlt destination are replaced by in-memory fakes so the
suite runs without credentials or network access.
"""
import csv
import io
import zipfile
from datetime import date

import pytest

from dv360_ingestion.config import Settings
from dv360_ingestion.sink import TableSink
from dv360_ingestion.utils.token_refresh import Credentials

PROCESSING_DATE = date(2024, 1, 20)

REPORT_HEADER = [
    "Date", "Insertion Order ID", "Line Item ID", "Line Item Status", "Device Type",
    "Impressions", "Billable Impressions", "Clicks", "Click Rate (CTR)", "Total Conversions",
    "Post-Click Conversions", "Post-View Conversions", "Revenue (USD)", "Media Cost (USD)",
]

SDF_HEADER = [
    "Line Item Id", "Io Id", "Type", "Pacing", "Bid Strategy Type", "Budget Type",
    "Audience Targeting - Include", "Audience Targeting - Similar Audiences",
    "Affinity & In Market Targeting - Include", "Frequency Enabled",
    "Viewability Targeting Active View", "Geography Targeting - Include",
    "Language Targeting - Include", "Digital Content Labels - Exclude",
    "Brand Safety Sensitivity Setting", "Site Targeting - Include",
]


def build_csv(header, rows) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def build_zip(entries) -> bytes:
    """Zip archive bytes from (filename, text) pairs, in order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for filename, text in entries:
            archive.writestr(filename, text)
    return buffer.getvalue()


def report_row(reported_at="2024/01/15", line_item_id="111", status="Active", device="Desktop"):
    return [reported_at, "999", line_item_id, status, device,
            "1000", "990", "12", "1.20%", "3", "1", "2", "15.50", "10.25"]


def sdf_row(line_item_id="111", audience="", similar="", affinity="", frequency="",
            geography="", language="", site=""):
    return [line_item_id, "999", "Display", "Flight", "Maximize", "Amount",
            audience, similar, affinity, frequency, "50%", geography, language,
            "DL-MA", "Use custom", site]


class FakeClient:
    """
    Stand-in for Dv360Client recording every call.

    ``report_states`` / ``operation_states`` are returned one per status
    check; the last one repeats once the list is exhausted.
    """

    def __init__(self, report_states=None, operation_states=None, report_payload=b"", media_payload=b""):
        self.calls = []
        self.report_states = list(report_states or [{"metadata": {"googleCloudStoragePath": "https://storage/report.csv"}}])
        self.operation_states = list(operation_states or [{"done": True, "response": {"resourceName": "sdfdownloadtasks/media/1"}}])
        self.report_payload = report_payload
        self.media_payload = media_payload

    def _next(self, states):
        return states.pop(0) if len(states) > 1 else states[0]

    async def create_query(self, body):
        self.calls.append(("create_query", body))
        return {"queryId": "q-1"}

    async def run_query(self, query_id):
        self.calls.append(("run_query", query_id))
        return {"key": {"queryId": query_id, "reportId": "r-1"}}

    async def get_report(self, query_id, report_id):
        self.calls.append(("get_report", (query_id, report_id)))
        return self._next(self.report_states)

    async def download_report(self, url, destination):
        self.calls.append(("download_report", url))
        destination.write(self.report_payload)
        return len(self.report_payload)

    async def create_sdf_task(self, body):
        self.calls.append(("create_sdf_task", body))
        return {"name": "sdfdownloadtasks/operations/op-1"}

    async def get_operation(self, name):
        self.calls.append(("get_operation", name))
        return self._next(self.operation_states)

    async def download_media(self, resource_name, destination):
        self.calls.append(("download_media", resource_name))
        destination.write(self.media_payload)
        return len(self.media_payload)

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


class FakeLoadInfo:
    def __init__(self, has_failed_jobs=False):
        self.has_failed_jobs = has_failed_jobs
        self.loads_ids = ["load-1"]

    def __str__(self):
        return "fake load info"


class FakePipeline:
    """Stand-in for dlt.Pipeline: evaluates the resource and keeps its rows."""

    def __init__(self, has_failed_jobs=False):
        self.runs = []
        self.has_failed_jobs = has_failed_jobs

    def run(self, data):
        rows = list(data)
        self.runs.append((data.name, rows))
        return FakeLoadInfo(self.has_failed_jobs)

    def rows(self, table):
        return [row for name, rows in self.runs if name == table for row in rows]


@pytest.fixture
def settings():
    """Settings with a static token and instant polling."""
    return Settings(
        credentials=Credentials(access_token="test-token"),
        poll_interval=0.0,
        poll_backoff=2.0,
        poll_max_interval=0.0,
        poll_timeout=5.0,
    )


@pytest.fixture
def fake_pipeline():
    return FakePipeline()


@pytest.fixture
def sink(settings, fake_pipeline):
    return TableSink(settings, pipeline=fake_pipeline)
