"""CSV export of the filtered pipeline and its headline summary.

The export consumes the same deal set the board shows (the retained deals of
compute_pipeline()) together with the stage catalog.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

import structlog

from src.crm.pipeline import metrics
from src.crm.pipeline.filters import value_as_text
from src.crm.pipeline.schemas import Deal, ExportSummary, Stage, StageBreakdown

logger = structlog.get_logger(__name__)

UNKNOWN_STAGE = "Unknown Stage"

# Column key -> header, in output order
EXPORT_COLUMNS: dict[str, str] = {
    "name": "Deal Name",
    "company": "Company",
    "contact_name": "Primary Contact",
    "stage_name": "Stage",
    "stage_probability": "Stage Probability (%)",
    "value": "Deal Value",
    "weighted_value": "Weighted Value",
    "probability": "Deal Probability (%)",
    "days_in_stage": "Days in Stage",
    "time_status": "Time Status",
    "owner": "Owner",
    "created_date": "Created Date",
    "close_date": "Expected Close Date",
    "stage_changed_date": "Stage Changed Date",
    "priority": "Priority",
    "lead_source": "Lead Source",
    "status": "Status",
}


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def _number(value: Decimal | float) -> str:
    """Percentages without trailing zeros (10, 12.5)."""
    return value_as_text(Decimal(str(value)))


def _timestamp(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def _date(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d") if value else ""


def _cell_getters(
    stage: Stage | None,
    now: datetime,
) -> dict[str, Callable[[Deal], str]]:
    def days(deal: Deal) -> int:
        return metrics.days_in_stage(deal, now)

    return {
        "name": lambda d: d.name,
        "company": lambda d: d.company,
        "contact_name": lambda d: d.contact_name,
        "stage_name": lambda d: stage.name if stage else UNKNOWN_STAGE,
        "stage_probability": lambda d: _number(stage.default_probability if stage else 0),
        "value": lambda d: _money(d.value),
        "weighted_value": lambda d: _money(metrics.weighted_value(d, stage)),
        "probability": lambda d: _number(metrics.resolve_probability(d, stage)),
        "days_in_stage": lambda d: str(days(d)),
        "time_status": lambda d: metrics.deal_time_status(d, now).value.capitalize(),
        "owner": lambda d: d.owner_id or "Unassigned",
        "created_date": lambda d: _timestamp(d.created_at),
        "close_date": lambda d: _date(d.expected_close_date),
        "stage_changed_date": lambda d: _timestamp(d.stage_changed_at),
        "priority": lambda d: d.priority or "",
        "lead_source": lambda d: d.lead_source or "",
        "status": lambda d: d.status.value.capitalize(),
    }


def select_columns(
    include_columns: list[str] | None = None,
    exclude_columns: list[str] | None = None,
) -> list[str]:
    """Resolve the export column list; unknown include names are dropped."""
    if include_columns is None:
        columns = list(EXPORT_COLUMNS)
    else:
        invalid = [c for c in include_columns if c not in EXPORT_COLUMNS]
        if invalid:
            logger.warning("pipeline_export.invalid_columns_dropped", columns=invalid)
        columns = [c for c in include_columns if c in EXPORT_COLUMNS]

    excluded = set(exclude_columns or [])
    return [c for c in columns if c not in excluded]


def export_pipeline_csv(
    deals: list[Deal],
    stages: list[Stage],
    include_columns: list[str] | None = None,
    exclude_columns: list[str] | None = None,
    now: datetime | None = None,
) -> str:
    """Render deals as CSV text with a header row.

    Args:
        deals: Deals to export, in output order.
        stages: Stage catalog used for stage names and default probabilities.
        include_columns: Column keys to include (default: all).
        exclude_columns: Column keys to remove after inclusion.
        now: Reference time for days-in-stage (defaults to now).

    Returns:
        CSV document as a string.

    Raises:
        ValueError: If there are no deals to export.
    """
    if not deals:
        raise ValueError("No pipeline data to export")

    now = metrics.as_aware(now or metrics.utcnow())
    columns = select_columns(include_columns, exclude_columns)
    stage_lookup = metrics.stages_by_id(stages)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([EXPORT_COLUMNS[c] for c in columns])
    for deal in deals:
        getters = _cell_getters(stage_lookup.get(deal.stage_id), now)
        writer.writerow([getters[c](deal) for c in columns])

    logger.info(
        "pipeline_export.csv_generated",
        deal_count=len(deals),
        column_count=len(columns),
    )
    return buffer.getvalue()


def pipeline_export_summary(
    deals: list[Deal],
    stages: list[Stage],
    now: datetime | None = None,
) -> ExportSummary:
    """Totals, per-stage breakdown and averages for the exported deal set."""
    now = metrics.as_aware(now or metrics.utcnow())
    stage_lookup = metrics.stages_by_id(stages)
    summary = ExportSummary(total_deals=len(deals))
    owners: set[str] = set()
    companies: set[str] = set()
    total_days = 0

    for deal in deals:
        stage = stage_lookup.get(deal.stage_id)
        weighted = metrics.weighted_value(deal, stage)
        summary.total_value += deal.value
        summary.total_weighted_value += weighted

        breakdown = summary.stage_breakdown.setdefault(
            stage.name if stage else UNKNOWN_STAGE, StageBreakdown()
        )
        breakdown.count += 1
        breakdown.value += deal.value
        breakdown.weighted_value += weighted

        if deal.owner_id:
            owners.add(deal.owner_id)
        if deal.company:
            companies.add(deal.company)
        total_days += metrics.days_in_stage(deal, now)

        if deal.created_at is not None:
            created = metrics.as_aware(deal.created_at)
            if summary.created_from is None or created < summary.created_from:
                summary.created_from = created
            if summary.created_to is None or created > summary.created_to:
                summary.created_to = created

    if deals:
        summary.average_deal_size = summary.total_value / len(deals)
        summary.average_days_in_stage = total_days / len(deals)

    summary.owners = sorted(owners)
    summary.companies = sorted(companies)
    return summary
