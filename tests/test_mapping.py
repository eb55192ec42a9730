"""
Tests for the CSV -> table row mapping engine.

Validates:
- List-style and flag-style boolean derivation
- Date normalization and malformed row skipping
- Uniform advertiser_id / imported_at stamping
- Structural parse failures
"""
import io
from datetime import date

import pytest

from conftest import REPORT_HEADER, SDF_HEADER, build_csv, report_row, sdf_row
from dv360_ingestion.errors import MalformedRowError, StructuralStreamError
from dv360_ingestion.mapping import (
    REPORT_MAPPING,
    SDF_MAPPING,
    FieldMapping,
    Rule,
    TableMapping,
    TransformStats,
    has_list_value,
    is_flag_enabled,
    normalize_date,
    transform,
)


class TestBooleanRules:
    """List-presence and flag-equality are distinct rules."""

    @pytest.mark.parametrize("value", ["", "   ", None, "\t"])
    def test_list_style_blank_is_false(self, value):
        """Blank list-style columns mean no targeting."""
        assert has_list_value(value) is False

    @pytest.mark.parametrize("value", ["123;456;", "x", " false ", "0"])
    def test_list_style_any_content_is_true(self, value):
        """Any list-style content means targeting is set."""
        assert has_list_value(value) is True

    @pytest.mark.parametrize("value", ["true", "TRUE ", "True", " true\n"])
    def test_flag_style_true_after_trim_and_casefold(self, value):
        """Flag-style columns accept "true" in any case and padding."""
        assert is_flag_enabled(value) is True

    @pytest.mark.parametrize("value", ["yes", "1", "", None, "truee", "t", "false"])
    def test_flag_style_anything_else_is_false(self, value):
        """Flag-style columns are false for anything but "true"."""
        assert is_flag_enabled(value) is False


class TestDateNormalization:

    def test_slashes_become_dashes(self):
        """Slash-separated dates are rewritten with dashes."""
        assert normalize_date("2024/01/15") == "2024-01-15"

    def test_already_normalized_is_kept(self):
        """Dash-separated dates pass through unchanged."""
        assert normalize_date("2024-01-15") == "2024-01-15"

    @pytest.mark.parametrize("value", ["15-01-2024", "", None, "01/15/2024", "2024/1/15", "Report Time:"])
    def test_non_matching_values_are_malformed(self, value):
        """Values not shaped like YYYY-MM-DD are malformed."""
        with pytest.raises(MalformedRowError):
            normalize_date(value)


class TestReportTransform:

    def test_malformed_dates_are_skipped_and_counted(self):
        """Rows with bad dates are skipped and counted, the rest kept in order."""
        payload = build_csv(REPORT_HEADER, [
            report_row("2024/01/15"),
            report_row("15-01-2024"),
            report_row("2024/01/16"),
            report_row(""),
        ])
        stats = TransformStats()

        rows = list(transform(io.StringIO(payload), REPORT_MAPPING, 42, date(2024, 1, 20), stats))

        assert [row["reported_at"] for row in rows] == ["2024-01-15", "2024-01-16"]
        assert stats.emitted == 2
        assert stats.dropped == 2

    def test_rows_are_stamped_with_invocation_values(self):
        """Every row carries the invocation's advertiser id and processing date."""
        payload = build_csv(REPORT_HEADER, [report_row(), report_row(line_item_id="222")])

        rows = list(transform(io.StringIO(payload), REPORT_MAPPING, 42, date(2024, 1, 20)))

        assert {row["advertiser_id"] for row in rows} == {42}
        assert {row["imported_at"] for row in rows} == {date(2024, 1, 20)}

    def test_report_fields_are_mapped(self):
        """Report columns are renamed and converted to their target types."""
        payload = build_csv(REPORT_HEADER, [report_row()])

        row = next(transform(io.StringIO(payload), REPORT_MAPPING, 42, date(2024, 1, 20)))

        assert row == {
            "imported_at": date(2024, 1, 20),
            "reported_at": "2024-01-15",
            "advertiser_id": 42,
            "insertion_order_id": 999,
            "line_item_id": 111,
            "line_item_status": "Active",
            "device_type": "Desktop",
            "impressions": 1000.0,
            "billable_impressions": 990.0,
            "clicks": 12.0,
            "click_rate": "1.20%",
            "total_conversions": 3.0,
            "last_clicks": 1.0,
            "last_impressions": 2.0,
            "revenue_usd": 15.5,
            "media_cost_usd": 10.25,
        }

    def test_summary_footer_is_dropped(self):
        """Report files end with totals and metadata lines without a date."""
        payload = build_csv(REPORT_HEADER, [report_row()])
        payload += ",,,,,1000,990,12,1.20%,3,1,2,15.50,10.25\n\nReport Time:,2024/01/20 10:00\n"
        stats = TransformStats()

        rows = list(transform(io.StringIO(payload), REPORT_MAPPING, 42, date(2024, 1, 20), stats))

        assert len(rows) == 1
        assert stats.dropped == 2

    def test_unparseable_metric_is_null(self):
        """A dated row with a garbled metric is kept, the metric loads as NULL."""
        garbled = report_row()
        garbled[5] = "1,000"
        stats = TransformStats()

        rows = list(transform(io.StringIO(build_csv(REPORT_HEADER, [garbled])), REPORT_MAPPING, 42, date(2024, 1, 20), stats))

        assert rows[0]["impressions"] is None
        assert rows[0]["clicks"] == 12.0
        assert stats.dropped == 0

    def test_imported_at_defaults_to_today(self):
        """Without a processing date, rows are stamped with today."""
        payload = build_csv(REPORT_HEADER, [report_row()])

        row = next(transform(io.StringIO(payload), REPORT_MAPPING, 42))

        assert row["imported_at"] == date.today()

    def test_output_is_lazy(self):
        """Rows are produced one at a time as they are pulled."""
        payload = build_csv(REPORT_HEADER, [report_row(), report_row()])
        stats = TransformStats()

        rows = transform(io.StringIO(payload), REPORT_MAPPING, 42, date(2024, 1, 20), stats)
        next(rows)

        assert stats.emitted == 1


class TestSdfTransform:

    def test_seven_booleans_follow_their_rules(self):
        """Each derived SDF boolean uses its list-presence or flag rule."""
        payload = build_csv(SDF_HEADER, [
            sdf_row(audience="1;2;", similar="TRUE", affinity="yes", frequency=" true ",
                    geography="  ", language="en", site=""),
        ])

        row = next(transform(io.StringIO(payload), SDF_MAPPING, 7, date(2024, 1, 20)))

        assert row["is_audience_targeting"] is True
        assert row["is_similar_audiences"] is True
        assert row["is_affinity_inmarket"] is False
        assert row["is_frequency_enabled"] is True
        assert row["is_geography_targeting"] is False
        assert row["is_language_targeting"] is True
        assert row["is_site_targeting"] is False

    def test_sdf_fields_are_mapped(self):
        """SDF columns are renamed and stamped."""
        payload = build_csv(SDF_HEADER, [sdf_row()])

        row = next(transform(io.StringIO(payload), SDF_MAPPING, 7, date(2024, 1, 20)))

        assert row["line_item_id"] == 111
        assert row["insertion_order_id"] == 999
        assert row["line_item_type"] == "Display"
        assert row["pacing_type"] == "Flight"
        assert row["bid_strategy_type"] == "Maximize"
        assert row["budget_type"] == "Amount"
        assert row["active_view"] == "50%"
        assert row["digital_content_labels"] == "DL-MA"
        assert row["brand_safety_sensitivity_setting"] == "Use custom"
        assert row["advertiser_id"] == 7
        assert row["imported_at"] == date(2024, 1, 20)
        assert set(row) == {field.target for field in SDF_MAPPING.fields}

    def test_missing_columns_derive_false(self):
        """Absent SDF columns give false flags and NULL text."""
        payload = build_csv(["Line Item Id", "Io Id"], [["1", "2"]])

        row = next(transform(io.StringIO(payload), SDF_MAPPING, 7, date(2024, 1, 20)))

        assert row["is_audience_targeting"] is False
        assert row["is_frequency_enabled"] is False
        assert row["line_item_type"] is None

    def test_non_numeric_id_loads_as_null(self):
        """Only the date check drops rows; an unparseable id is stored as NULL."""
        payload = build_csv(SDF_HEADER, [sdf_row(line_item_id="abc"), sdf_row()])
        stats = TransformStats()

        rows = list(transform(io.StringIO(payload), SDF_MAPPING, 7, date(2024, 1, 20), stats))

        assert [row["line_item_id"] for row in rows] == [None, 111]
        assert stats.dropped == 0


class TestStructuralErrors:

    def test_unterminated_quote_aborts(self):
        """An unterminated quoted field aborts the whole transform."""
        payload = 'Line Item Id,Type\n1,"Display\n'

        with pytest.raises(StructuralStreamError):
            list(transform(io.StringIO(payload), SDF_MAPPING, 7, date(2024, 1, 20)))

    def test_undecodable_bytes_abort(self):
        """Bytes that are not UTF-8 abort the whole transform."""
        stream = io.TextIOWrapper(io.BytesIO(b"Line Item Id\n\xff\xfe\xfa\n"), encoding="utf-8")

        with pytest.raises(StructuralStreamError):
            list(transform(stream, SDF_MAPPING, 7, date(2024, 1, 20)))


class TestTableMapping:

    def test_columns_carry_declared_types(self):
        """Column hints carry each field's declared dlt type."""
        columns = REPORT_MAPPING.columns()

        assert columns["imported_at"]["data_type"] == "date"
        assert columns["advertiser_id"]["data_type"] == "bigint"
        assert columns["line_item_status"]["data_type"] == "text"

    def test_custom_mapping_needs_no_new_code(self):
        """A new table is described by a mapping alone."""
        mapping = TableMapping(
            table_name="custom",
            fields=(
                FieldMapping("day", "Day", Rule.DATE_NORMALIZE, "date"),
                FieldMapping("has_keywords", "Keywords", Rule.LIST_PRESENCE, "bool"),
                FieldMapping("advertiser_id", "advertiser_id", Rule.CONSTANT, "bigint"),
            ),
        )
        payload = build_csv(["Day", "Keywords"], [["2024/02/01", "shoes"]])

        rows = list(transform(io.StringIO(payload), mapping, 5, date(2024, 2, 2)))

        assert rows == [{"day": "2024-02-01", "has_keywords": True, "advertiser_id": 5}]
