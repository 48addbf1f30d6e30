"""Tests for the pipeline CSV export and export summary."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.crm.pipeline.export import (
    EXPORT_COLUMNS,
    UNKNOWN_STAGE,
    export_pipeline_csv,
    pipeline_export_summary,
    select_columns,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _rows(text: str) -> list[dict[str, str]]:
    return list(csv.DictReader(io.StringIO(text)))


# ── Column Selection ────────────────────────────────────────────────────────


def test_default_columns_are_all_in_order():
    assert select_columns() == list(EXPORT_COLUMNS)


def test_include_then_exclude():
    assert select_columns(["name", "value", "owner"], ["owner"]) == ["name", "value"]


def test_unknown_include_columns_are_dropped():
    assert select_columns(["name", "bogus"]) == ["name"]


# ── CSV ─────────────────────────────────────────────────────────────────────


def test_header_row_uses_display_names(deals, stages):
    text = export_pipeline_csv(deals, stages, now=NOW)
    header = text.splitlines()[0].split(",")
    assert header == list(EXPORT_COLUMNS.values())


def test_row_values(deals, stages):
    rows = _rows(export_pipeline_csv(deals, stages, now=NOW))

    assert len(rows) == 4
    first = rows[0]
    assert first["Deal Name"] == "Deal d1"
    assert first["Stage"] == "Lead"
    assert first["Stage Probability (%)"] == "10"
    assert first["Deal Value"] == "1000.00"
    assert first["Weighted Value"] == "100.00"
    assert first["Deal Probability (%)"] == "10"
    assert first["Days in Stage"] == "3"
    assert first["Time Status"] == "Normal"
    assert first["Owner"] == "user-1"
    assert first["Created Date"] == "2026-05-29 12:00"
    assert first["Expected Close Date"] == ""
    assert first["Status"] == "Active"


def test_deal_probability_overrides_stage_default(deals, stages):
    rows = _rows(export_pipeline_csv(deals, stages, now=NOW))
    d3 = rows[2]
    assert d3["Deal Probability (%)"] == "40"
    assert d3["Stage Probability (%)"] == "50"
    assert d3["Weighted Value"] == "1200.00"


def test_unknown_stage_and_missing_owner(make_deal, stages):
    deal = make_deal(
        "x1",
        "stage-gone",
        500,
        owner_id="",
        expected_close_date=datetime(2026, 7, 4, 9, 30),
        stage_changed_at=NOW - timedelta(days=40),
    )
    row = _rows(export_pipeline_csv([deal], stages, now=NOW))[0]

    assert row["Stage"] == UNKNOWN_STAGE
    assert row["Weighted Value"] == "0.00"
    assert row["Owner"] == "Unassigned"
    assert row["Expected Close Date"] == "2026-07-04"
    assert row["Time Status"] == "Danger"


def test_values_with_commas_are_quoted(make_deal, stages):
    deal = make_deal("x1", "stage-lead", 10, company="Acme, Inc.")
    text = export_pipeline_csv([deal], stages, include_columns=["company"], now=NOW)
    assert text == 'Company\n"Acme, Inc."\n'


def test_selected_columns_only(deals, stages):
    text = export_pipeline_csv(
        deals, stages, include_columns=["name", "value"], now=NOW
    )
    assert text.splitlines()[:2] == ["Deal Name,Deal Value", "Deal d1,1000.00"]


def test_empty_export_raises(stages):
    with pytest.raises(ValueError, match="No pipeline data to export"):
        export_pipeline_csv([], stages)


# ── Summary ─────────────────────────────────────────────────────────────────


def test_summary_totals(deals, stages):
    summary = pipeline_export_summary(deals, stages, now=NOW)

    assert summary.total_deals == 4
    assert summary.total_value == Decimal("10000")
    # 100 + 200 + 1200 + 2000
    assert summary.total_weighted_value == Decimal("3500")
    assert summary.average_deal_size == Decimal("2500")
    assert summary.average_days_in_stage == 3.0
    assert summary.owners == ["user-1", "user-2"]
    assert summary.companies == ["Company d1", "Company d2", "Company d3", "Company d4"]
    assert summary.created_from == NOW - timedelta(days=3)
    assert summary.created_to == NOW - timedelta(days=3)


def test_summary_stage_breakdown(deals, stages):
    breakdown = pipeline_export_summary(deals, stages, now=NOW).stage_breakdown

    assert set(breakdown) == {"Lead", "Proposal"}
    assert breakdown["Lead"].count == 2
    assert breakdown["Lead"].value == Decimal("3000")
    assert breakdown["Lead"].weighted_value == Decimal("300")
    assert breakdown["Proposal"].weighted_value == Decimal("3200")


def test_summary_of_nothing(stages):
    summary = pipeline_export_summary([], stages, now=NOW)
    assert summary.total_deals == 0
    assert summary.average_deal_size == Decimal("0")
    assert summary.created_from is None
