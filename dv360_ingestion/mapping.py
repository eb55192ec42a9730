"""
Declarative mapping of CSV records onto destination table rows.

Each destination table is described by a TableMapping: an ordered list of
FieldMapping entries naming the target column, the source header (or the
context key for constants), the conversion rule and the dlt data type.
Both the performance report and the SDF export go through the same
``transform`` generator; a new report variant only needs a new mapping.
"""

import csv
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from dv360_ingestion.errors import MalformedRowError, StructuralStreamError

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")


class Rule(str, Enum):
    IDENTITY = "identity"
    INTEGER = "integer"
    NUMBER = "number"
    LIST_PRESENCE = "list_presence"
    FLAG_EQUALS = "flag_equals"
    DATE_NORMALIZE = "date_normalize"
    CONSTANT = "constant"


@dataclass(frozen=True)
class FieldMapping:
    target: str
    source: str
    rule: Rule = Rule.IDENTITY
    data_type: str = "text"


@dataclass(frozen=True)
class TableMapping:
    table_name: str
    fields: Tuple[FieldMapping, ...]
    partition_field: str = "imported_at"

    def columns(self) -> Dict[str, Dict[str, Any]]:
        """dlt column hints for the destination table."""
        return {f.target: {"data_type": f.data_type, "nullable": True} for f in self.fields}


@dataclass
class TransformStats:
    emitted: int = 0
    dropped: int = 0


# ============================================================================
# CONVERSION RULES
# ============================================================================

def _text(value: Optional[str]) -> str:
    return (value or "").strip()


def has_list_value(value: Optional[str]) -> bool:
    """List-style column: true when any targeting criteria were given."""
    return len(_text(value)) > 0


def is_flag_enabled(value: Optional[str]) -> bool:
    """Flag-style column: true only for an explicit "true" toggle."""
    return _text(value).lower() == "true"


def normalize_date(value: Optional[str]) -> str:
    """Turn ``2024/01/15`` into ``2024-01-15``; anything else is a malformed row."""
    normalized = _text(value).replace("/", "-")
    if not DATE_PATTERN.fullmatch(normalized):
        raise MalformedRowError(f"Unexpected date value: {value!r}")
    return normalized


def to_integer(value: Optional[str]) -> Optional[int]:
    """Blank or unparseable values load as NULL; they never drop the row."""
    text = _text(value)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        logger.debug(f"Unexpected integer value {value!r}, storing NULL")
        return None


def to_number(value: Optional[str]) -> Optional[float]:
    text = _text(value)
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        logger.debug(f"Unexpected numeric value {value!r}, storing NULL")
        return None


def convert(field: FieldMapping, record: Dict[str, Optional[str]], context: Dict[str, Any]) -> Any:
    if field.rule is Rule.CONSTANT:
        return context[field.source]

    value = record.get(field.source)
    if field.rule is Rule.IDENTITY:
        return value
    if field.rule is Rule.INTEGER:
        return to_integer(value)
    if field.rule is Rule.NUMBER:
        return to_number(value)
    if field.rule is Rule.LIST_PRESENCE:
        return has_list_value(value)
    if field.rule is Rule.FLAG_EQUALS:
        return is_flag_enabled(value)
    if field.rule is Rule.DATE_NORMALIZE:
        return normalize_date(value)
    raise ValueError(f"Unknown rule: {field.rule}")


def map_record(
    mapping: TableMapping,
    record: Dict[str, Optional[str]],
    context: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Map one source record to a target row.

    Raises:
        MalformedRowError: If the row's date fails validation
    """
    return {field.target: convert(field, record, context) for field in mapping.fields}


# ============================================================================
# TRANSFORM
# ============================================================================

def transform(
    stream: Iterable[str],
    mapping: TableMapping,
    advertiser_id: int,
    imported_at: Optional[date] = None,
    stats: Optional[TransformStats] = None,
) -> Iterator[Dict[str, Any]]:
    """
    Lazily parse a CSV text stream (header row first) into target rows.

    Rows whose date fails validation are skipped and counted in ``stats``;
    unparseable numbers load as NULL.
    The stream is consumed as rows are pulled and cannot be restarted.

    Raises:
        StructuralStreamError: If the payload is not readable delimited text
    """
    stats = stats if stats is not None else TransformStats()
    context = {
        "advertiser_id": advertiser_id,
        "imported_at": imported_at or date.today(),
    }

    try:
        reader = csv.DictReader(stream, strict=True)
        for line_number, record in enumerate(reader, start=2):
            try:
                row = map_record(mapping, record, context)
            except MalformedRowError as e:
                stats.dropped += 1
                logger.debug(f"Skipping {mapping.table_name} line {line_number}: {e}")
                continue

            stats.emitted += 1
            yield row

    except (csv.Error, UnicodeDecodeError, zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise StructuralStreamError(f"Could not parse {mapping.table_name} payload: {e}") from e

    logger.info(f"Mapped {stats.emitted} {mapping.table_name} rows ({stats.dropped} skipped)")


# ============================================================================
# TABLE MAPPINGS
# ============================================================================

REPORT_MAPPING = TableMapping(
    table_name="reports",
    fields=(
        FieldMapping("imported_at", "imported_at", Rule.CONSTANT, "date"),
        FieldMapping("reported_at", "Date", Rule.DATE_NORMALIZE, "date"),
        FieldMapping("advertiser_id", "advertiser_id", Rule.CONSTANT, "bigint"),
        FieldMapping("insertion_order_id", "Insertion Order ID", Rule.INTEGER, "bigint"),
        FieldMapping("line_item_id", "Line Item ID", Rule.INTEGER, "bigint"),
        FieldMapping("line_item_status", "Line Item Status"),
        FieldMapping("device_type", "Device Type"),
        FieldMapping("impressions", "Impressions", Rule.NUMBER, "double"),
        FieldMapping("billable_impressions", "Billable Impressions", Rule.NUMBER, "double"),
        FieldMapping("clicks", "Clicks", Rule.NUMBER, "double"),
        FieldMapping("click_rate", "Click Rate (CTR)"),
        FieldMapping("total_conversions", "Total Conversions", Rule.NUMBER, "double"),
        FieldMapping("last_clicks", "Post-Click Conversions", Rule.NUMBER, "double"),
        FieldMapping("last_impressions", "Post-View Conversions", Rule.NUMBER, "double"),
        FieldMapping("revenue_usd", "Revenue (USD)", Rule.NUMBER, "double"),
        FieldMapping("media_cost_usd", "Media Cost (USD)", Rule.NUMBER, "double"),
    ),
)

SDF_MAPPING = TableMapping(
    table_name="sdfs",
    fields=(
        FieldMapping("line_item_id", "Line Item Id", Rule.INTEGER, "bigint"),
        FieldMapping("insertion_order_id", "Io Id", Rule.INTEGER, "bigint"),
        FieldMapping("line_item_type", "Type"),
        FieldMapping("pacing_type", "Pacing"),
        FieldMapping("bid_strategy_type", "Bid Strategy Type"),
        FieldMapping("budget_type", "Budget Type"),
        FieldMapping("is_audience_targeting", "Audience Targeting - Include", Rule.LIST_PRESENCE, "bool"),
        FieldMapping("is_similar_audiences", "Audience Targeting - Similar Audiences", Rule.FLAG_EQUALS, "bool"),
        FieldMapping("is_affinity_inmarket", "Affinity & In Market Targeting - Include", Rule.FLAG_EQUALS, "bool"),
        FieldMapping("is_frequency_enabled", "Frequency Enabled", Rule.FLAG_EQUALS, "bool"),
        FieldMapping("active_view", "Viewability Targeting Active View"),
        FieldMapping("is_geography_targeting", "Geography Targeting - Include", Rule.LIST_PRESENCE, "bool"),
        FieldMapping("is_language_targeting", "Language Targeting - Include", Rule.LIST_PRESENCE, "bool"),
        FieldMapping("digital_content_labels", "Digital Content Labels - Exclude"),
        FieldMapping("brand_safety_sensitivity_setting", "Brand Safety Sensitivity Setting"),
        FieldMapping("is_site_targeting", "Site Targeting - Include", Rule.LIST_PRESENCE, "bool"),
        FieldMapping("imported_at", "imported_at", Rule.CONSTANT, "date"),
        FieldMapping("advertiser_id", "advertiser_id", Rule.CONSTANT, "bigint"),
    ),
)
