"""Tests for the filter & aggregation engine (compute_pipeline)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.crm.pipeline.filters import compute_pipeline, compute_view, matches_search
from src.crm.pipeline.schemas import (
    DateField,
    DealSize,
    FilterSet,
    QuickFilter,
    TimeStatus,
    ViewState,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ids(view, stage_id):
    return [deal.id for deal in view.by_stage[stage_id]]


def _all_ids(view):
    return sorted(deal.id for deals in view.by_stage.values() for deal in deals)


# ── Grouping ────────────────────────────────────────────────────────────────


def test_every_stage_gets_a_column(stages):
    view = compute_pipeline([], stages, now=NOW)
    assert list(view.by_stage) == [s.id for s in stages]
    assert all(deals == [] for deals in view.by_stage.values())
    assert view.total_value == Decimal("0")
    assert view.deal_count == 0


def test_deals_grouped_by_stage_in_input_order(stages, deals):
    view = compute_pipeline(deals, stages, now=NOW)
    assert _ids(view, "stage-lead") == ["d1", "d2"]
    assert _ids(view, "stage-proposal") == ["d3", "d4"]
    assert view.deal_count == 4


def test_each_deal_in_exactly_one_column(stages, deals):
    view = compute_pipeline(deals, stages, now=NOW)
    ids = [deal.id for column in view.by_stage.values() for deal in column]
    assert sorted(ids) == sorted(set(ids)) == ["d1", "d2", "d3", "d4"]


def test_deal_on_unknown_stage_is_dropped(stages, make_deal):
    view = compute_pipeline([make_deal("x", "stage-gone", 500)], stages, now=NOW)
    assert view.deal_count == 0
    assert view.total_value == Decimal("0")


def test_inputs_are_not_mutated(stages, deals):
    before = [d.model_dump() for d in deals]
    compute_pipeline(deals, stages, "deal", FilterSet(min_value=Decimal("1500")), now=NOW)
    assert [d.model_dump() for d in deals] == before


def test_engine_is_idempotent(stages, deals):
    filters = FilterSet(min_value=Decimal("1500"), quick_filter=QuickFilter.HOT_DEALS)
    first = compute_pipeline(deals, stages, "company", filters, now=NOW)
    second = compute_pipeline(deals, stages, "company", filters, now=NOW)
    assert first == second


# ── Metrics ─────────────────────────────────────────────────────────────────


def test_weighted_value_uses_stage_default(make_stage, make_deal):
    """Lead default 10%, value 1000, no deal probability -> 100."""
    stages = [make_stage("Lead", 1, 10), make_stage("Proposal", 2, 50), make_stage("Won", 3, 100)]
    view = compute_pipeline([make_deal("D1", "stage-lead", 1000)], stages, now=NOW)
    assert view.weighted_value == Decimal("100")


def test_weighted_value_law_over_retained_deals(stages, deals):
    # d1 1000*10%, d2 2000*10%, d3 3000*40% (own), d4 4000*50%
    view = compute_pipeline(deals, stages, now=NOW)
    assert view.total_value == Decimal("10000")
    assert view.weighted_value == Decimal("100") + Decimal("200") + Decimal("1200") + Decimal("2000")

    filtered = compute_pipeline(deals, stages, filters=FilterSet(min_value=Decimal("2500")), now=NOW)
    assert filtered.weighted_value == Decimal("1200") + Decimal("2000")


def test_active_weighted_value_excludes_closed_stages(stages, make_deal):
    deals = [
        make_deal("a", "stage-lead", 1000),
        make_deal("b", "stage-closed-won", 5000),
    ]
    view = compute_pipeline(deals, stages, now=NOW)
    assert view.weighted_value == Decimal("100") + Decimal("5000")
    assert view.active_weighted_value == Decimal("100")


def test_stage_metrics_follow_catalog_order(stages, deals):
    view = compute_pipeline(deals, stages, now=NOW)
    assert [m.stage_id for m in view.stage_metrics] == [s.id for s in stages]
    lead = view.stage_metrics[0]
    assert lead.count == 2
    assert lead.value == Decimal("3000")
    assert lead.weighted_value == Decimal("300")
    assert view.stage_metrics[3].count == 0


# ── Search ──────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("term", ["acme", "ACME", "jane", "renewal", "1500", "  acme  "])
def test_search_matches_name_company_contact_value(make_deal, term):
    deal = make_deal(
        "d1", "s", 1500, name="Q3 Renewal", company="Acme Ltd", contact_name="Jane Doe"
    )
    assert matches_search(deal, term)


def test_search_misses(make_deal):
    deal = make_deal("d1", "s", 1500, name="Q3 Renewal", company="Acme Ltd")
    assert not matches_search(deal, "globex")


def test_empty_search_matches_everything(stages, deals):
    assert compute_pipeline(deals, stages, "   ", now=NOW).deal_count == 4


# ── Predicates ──────────────────────────────────────────────────────────────


def test_min_value_filter(make_stage, make_deal):
    stages = [make_stage("Lead", 1, 10)]
    deals = [make_deal("a", "stage-lead", 400), make_deal("b", "stage-lead", 600)]
    view = compute_pipeline(deals, stages, filters=FilterSet(min_value=Decimal("500")), now=NOW)
    assert _ids(view, "stage-lead") == ["b"]
    assert view.total_value == Decimal("600")


def test_value_range_is_inclusive(stages, deals):
    filters = FilterSet(min_value=Decimal("2000"), max_value=Decimal("3000"))
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["d2", "d3"]


def test_min_probability_uses_resolved_probability(stages, deals):
    # d3 has its own 40%; d4 inherits Proposal's 50%; Lead deals 10%
    filters = FilterSet(min_probability=45)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["d4"]


def test_tags_filter_requires_overlap(stages, make_deal):
    deals = [
        make_deal("a", "stage-lead", 1, tags=["saas", "emea"]),
        make_deal("b", "stage-lead", 1, tags=["apac"]),
        make_deal("c", "stage-lead", 1),
    ]
    view = compute_pipeline(deals, stages, filters=FilterSet(tags=["emea", "us"]), now=NOW)
    assert _all_ids(view) == ["a"]


def test_date_range_on_selected_field(stages, make_deal):
    deals = [
        make_deal("a", "stage-lead", 1, expected_close_date=NOW + timedelta(days=5)),
        make_deal("b", "stage-lead", 1, expected_close_date=NOW + timedelta(days=50)),
        make_deal("c", "stage-lead", 1),
    ]
    filters = FilterSet(
        date_field=DateField.EXPECTED_CLOSE_DATE,
        date_from=NOW,
        date_to=NOW + timedelta(days=10),
    )
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["a"]


def test_categorical_filters(stages, make_deal):
    deals = [
        make_deal("a", "stage-lead", 1000, priority="high", lead_source="web"),
        make_deal("b", "stage-proposal", 30000, priority="high", lead_source="referral"),
        make_deal("c", "stage-proposal", 200000, priority="low", lead_source="web"),
    ]
    assert _all_ids(
        compute_pipeline(deals, stages, filters=FilterSet(stage_ids=["stage-proposal"]), now=NOW)
    ) == ["b", "c"]
    assert _all_ids(
        compute_pipeline(deals, stages, filters=FilterSet(priorities=["high"]), now=NOW)
    ) == ["a", "b"]
    assert _all_ids(
        compute_pipeline(deals, stages, filters=FilterSet(lead_sources=["web"]), now=NOW)
    ) == ["a", "c"]
    assert _all_ids(
        compute_pipeline(
            deals, stages, filters=FilterSet(deal_sizes=[DealSize.LARGE, DealSize.ENTERPRISE]), now=NOW
        )
    ) == ["b", "c"]


def test_days_in_stage_and_time_status_filters(stages, make_deal):
    deals = [
        make_deal("fresh", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=2)),
        make_deal("warm", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=20)),
        make_deal("cold", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=45)),
    ]
    ranged = FilterSet(min_days_in_stage=10, max_days_in_stage=30)
    assert _all_ids(compute_pipeline(deals, stages, filters=ranged, now=NOW)) == ["warm"]

    statuses = FilterSet(time_statuses=[TimeStatus.NORMAL, TimeStatus.DANGER])
    assert _all_ids(compute_pipeline(deals, stages, filters=statuses, now=NOW)) == ["cold", "fresh"]


def test_predicates_are_anded_with_search(stages, deals):
    filters = FilterSet(min_value=Decimal("1500"))
    view = compute_pipeline(deals, stages, "company d2", filters, now=NOW)
    assert _all_ids(view) == ["d2"]


# ── Quick Filters ───────────────────────────────────────────────────────────


def test_stale_deals_quick_filter(stages, make_deal):
    deals = [
        make_deal("old", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=40)),
        make_deal("new", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=5)),
    ]
    filters = FilterSet(quick_filter=QuickFilter.STALE_DEALS)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["old"]


def test_my_deals_quick_filter(stages, deals):
    filters = FilterSet(quick_filter=QuickFilter.MY_DEALS)
    view = compute_pipeline(deals, stages, filters=filters, current_user_id="user-2", now=NOW)
    assert _all_ids(view) == ["d4"]


def test_my_deals_without_current_user_matches_nothing(stages, deals):
    filters = FilterSet(quick_filter=QuickFilter.MY_DEALS)
    assert compute_pipeline(deals, stages, filters=filters, now=NOW).deal_count == 0


def test_hot_deals_by_probability_or_value(stages, make_deal):
    deals = [
        make_deal("likely", "stage-proposal", 100),  # inherits 50%
        make_deal("big", "stage-lead", 5000),
        make_deal("cold", "stage-lead", 4999),
    ]
    filters = FilterSet(quick_filter=QuickFilter.HOT_DEALS)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["big", "likely"]


def test_closing_soon_quick_filter(stages, make_deal):
    deals = [
        make_deal("soon", "stage-lead", 1, expected_close_date=NOW + timedelta(days=10)),
        make_deal("later", "stage-lead", 1, expected_close_date=NOW + timedelta(days=45)),
        make_deal("past", "stage-lead", 1, expected_close_date=NOW - timedelta(days=1)),
        make_deal("none", "stage-lead", 1),
    ]
    filters = FilterSet(quick_filter=QuickFilter.CLOSING_SOON)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["soon"]


def test_recent_quick_filter(stages, make_deal):
    deals = [
        make_deal("recent", "stage-lead", 1, created_at=NOW - timedelta(days=3)),
        make_deal("old", "stage-lead", 1, created_at=NOW - timedelta(days=90)),
    ]
    filters = FilterSet(quick_filter=QuickFilter.RECENT)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["recent"]


def test_quick_filter_window_is_configurable(monkeypatch, stages, make_deal):
    monkeypatch.setenv("PIPELINE_QUICK_FILTER_WINDOW_DAYS", "7")
    deals = [make_deal("a", "stage-lead", 1, stage_changed_at=NOW - timedelta(days=10))]
    filters = FilterSet(quick_filter=QuickFilter.STALE_DEALS)
    assert _all_ids(compute_pipeline(deals, stages, filters=filters, now=NOW)) == ["a"]


# ── View State ──────────────────────────────────────────────────────────────


def test_compute_view_passes_view_state(stages, deals):
    view = ViewState(
        current_user_id="user-1",
        search_term="deal",
        filters=FilterSet(quick_filter=QuickFilter.MY_DEALS, min_value=Decimal("1500")),
    )
    assert _all_ids(compute_view(deals, stages, view, now=NOW)) == ["d2", "d3"]
