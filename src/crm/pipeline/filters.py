"""Filter & aggregation engine for the pipeline board.

compute_pipeline() is a pure function of (deals, stages, search term, filter
set). It returns the retained deals grouped by stage together with the
pipeline value metrics. It never mutates its inputs and is cheap enough to be
re-run on every deal, stage, search or filter change.

Evaluation order:
1. Every known stage gets an (initially empty) column
2. The quick filter runs as a pre-pass over the full deal list
3. Every remaining deal must pass all active predicates
4. Retained deals are appended to their stage column
5. Totals: value, probability-weighted value, and weighted value excluding
   closed stages
6. Per-stage metrics in catalog order
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from decimal import Decimal

import structlog

from src.crm.config import get_settings
from src.crm.pipeline import metrics
from src.crm.pipeline.schemas import (
    Deal,
    FilterSet,
    PipelineView,
    QuickFilter,
    Stage,
    StageMetric,
    ViewState,
)

logger = structlog.get_logger(__name__)

DealPredicate = Callable[[Deal], bool]


# ── Search ──────────────────────────────────────────────────────────────────


def value_as_text(value: Decimal) -> str:
    """Render a deal value the way users type it (1000, not 1000.00)."""
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def matches_search(deal: Deal, term: str) -> bool:
    """Case-insensitive substring match across name, company, contact and value."""
    needle = term.strip().lower()
    if not needle:
        return True
    haystack = (
        deal.name,
        deal.company,
        deal.contact_name,
        value_as_text(deal.value),
    )
    return any(needle in (field or "").lower() for field in haystack)


# ── Quick Filters ───────────────────────────────────────────────────────────


def quick_filter_predicate(
    quick_filter: QuickFilter,
    *,
    stage_lookup: dict[str, Stage],
    current_user_id: str | None,
    now: datetime,
) -> DealPredicate | None:
    """Build the pre-pass predicate for a quick filter (None for ``all``)."""
    settings = get_settings()
    window = timedelta(days=settings.PIPELINE_QUICK_FILTER_WINDOW_DAYS)
    hot_probability = Decimal(str(settings.PIPELINE_HOT_PROBABILITY))
    hot_value = Decimal(str(settings.PIPELINE_HOT_VALUE))

    if quick_filter == QuickFilter.MY_DEALS:
        return lambda deal: current_user_id is not None and deal.owner_id == current_user_id

    if quick_filter == QuickFilter.HOT_DEALS:
        def is_hot(deal: Deal) -> bool:
            probability = metrics.resolve_probability(
                deal, stage_lookup.get(deal.stage_id)
            )
            return probability >= hot_probability or deal.value >= hot_value

        return is_hot

    if quick_filter == QuickFilter.CLOSING_SOON:
        def is_closing_soon(deal: Deal) -> bool:
            if deal.expected_close_date is None:
                return False
            close = metrics.as_aware(deal.expected_close_date)
            return now <= close <= now + window

        return is_closing_soon

    if quick_filter == QuickFilter.STALE_DEALS:
        def is_stale(deal: Deal) -> bool:
            if deal.stage_changed_at is None:
                return False
            return metrics.as_aware(deal.stage_changed_at) <= now - window

        return is_stale

    if quick_filter == QuickFilter.RECENT:
        def is_recent(deal: Deal) -> bool:
            if deal.created_at is None:
                return False
            return metrics.as_aware(deal.created_at) >= now - window

        return is_recent

    return None


# ── Predicate Set ───────────────────────────────────────────────────────────


def _in_date_range(deal: Deal, filters: FilterSet) -> bool:
    if filters.date_from is None and filters.date_to is None:
        return True
    value = getattr(deal, filters.date_field.value)
    if value is None:
        return False
    value = metrics.as_aware(value)
    if filters.date_from is not None and value < metrics.as_aware(filters.date_from):
        return False
    if filters.date_to is not None and value > metrics.as_aware(filters.date_to):
        return False
    return True


def matches_filters(
    deal: Deal,
    filters: FilterSet,
    stage: Stage | None,
    now: datetime,
) -> bool:
    """True when the deal passes every active predicate in ``filters``."""
    if filters.min_value is not None and deal.value < filters.min_value:
        return False
    if filters.max_value is not None and deal.value > filters.max_value:
        return False

    if filters.min_probability is not None:
        probability = metrics.resolve_probability(deal, stage)
        if probability < Decimal(str(filters.min_probability)):
            return False

    if filters.tags and not set(filters.tags) & set(deal.tags):
        return False

    if not _in_date_range(deal, filters):
        return False

    if filters.stage_ids and deal.stage_id not in filters.stage_ids:
        return False
    if filters.priorities and deal.priority not in filters.priorities:
        return False
    if filters.lead_sources and deal.lead_source not in filters.lead_sources:
        return False
    if filters.deal_sizes and metrics.deal_size(deal.value) not in filters.deal_sizes:
        return False

    if (
        filters.min_days_in_stage is not None
        or filters.max_days_in_stage is not None
        or filters.time_statuses
    ):
        days = metrics.days_in_stage(deal, now)
        if filters.min_days_in_stage is not None and days < filters.min_days_in_stage:
            return False
        if filters.max_days_in_stage is not None and days > filters.max_days_in_stage:
            return False
        if filters.time_statuses and metrics.time_status(days) not in filters.time_statuses:
            return False

    return True


# ── Aggregation ─────────────────────────────────────────────────────────────


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, Decimal("0"))


def compute_pipeline(
    deals: list[Deal],
    stages: list[Stage],
    search_term: str = "",
    filters: FilterSet | None = None,
    *,
    current_user_id: str | None = None,
    now: datetime | None = None,
) -> PipelineView:
    """Group and aggregate the deals that pass the search and filter set.

    Args:
        deals: Authoritative deal list (not modified).
        stages: Stage catalog in board order (not modified).
        search_term: Free-text search; empty matches everything.
        filters: Predicate set; None means no constraints.
        current_user_id: User the ``my_deals`` quick filter matches.
        now: Reference time for time-window predicates (defaults to now).

    Returns:
        PipelineView with per-stage deal lists and value metrics.
    """
    filters = filters or FilterSet()
    now = metrics.as_aware(now or metrics.utcnow())
    stage_lookup = metrics.stages_by_id(stages)

    # Every column renders, even with zero deals
    by_stage: dict[str, list[Deal]] = {stage.id: [] for stage in stages}

    candidates: Iterable[Deal] = deals
    pre_pass = quick_filter_predicate(
        filters.quick_filter,
        stage_lookup=stage_lookup,
        current_user_id=current_user_id,
        now=now,
    )
    if pre_pass is not None:
        candidates = [deal for deal in deals if pre_pass(deal)]

    dropped_unknown_stage = 0
    for deal in candidates:
        if search_term and not matches_search(deal, search_term):
            continue
        stage = stage_lookup.get(deal.stage_id)
        if not matches_filters(deal, filters, stage, now):
            continue
        if stage is None:
            dropped_unknown_stage += 1
            continue
        by_stage[deal.stage_id].append(deal)

    if dropped_unknown_stage:
        logger.warning(
            "pipeline_filters.unknown_stage_deals_dropped",
            count=dropped_unknown_stage,
        )

    stage_metrics: list[StageMetric] = []
    total_value = Decimal("0")
    weighted_total = Decimal("0")
    active_weighted = Decimal("0")
    for stage in stages:
        stage_deals = by_stage[stage.id]
        value = _sum(deal.value for deal in stage_deals)
        weighted = _sum(metrics.weighted_value(deal, stage) for deal in stage_deals)
        stage_metrics.append(
            StageMetric(
                stage_id=stage.id,
                stage_name=stage.name,
                count=len(stage_deals),
                value=value,
                weighted_value=weighted,
            )
        )
        total_value += value
        weighted_total += weighted
        if not metrics.is_closed_stage(stage):
            active_weighted += weighted

    return PipelineView(
        by_stage=by_stage,
        total_value=total_value,
        weighted_value=weighted_total,
        active_weighted_value=active_weighted,
        stage_metrics=stage_metrics,
        deal_count=sum(metric.count for metric in stage_metrics),
    )


def compute_view(
    deals: list[Deal],
    stages: list[Stage],
    view: ViewState,
    now: datetime | None = None,
) -> PipelineView:
    """compute_pipeline() driven by an explicit ViewState."""
    return compute_pipeline(
        deals,
        stages,
        view.search_term,
        view.filters,
        current_user_id=view.current_user_id,
        now=now,
    )
