"""Pydantic schemas for the pipeline board -- stages, deals, filters, views.

Defines all structured types for the pipeline:
- Enums: DealStatus, TimeStatus, DealSize, QuickFilter, DateField, SortMode
- Catalog: Stage
- Deals: Deal, DealCreate, DealUpdate
- Filtering: FilterSet, ViewState
- Derived output: StageMetric, CardBadge, PipelineView
- Store results: MutationResult
- Export: StageBreakdown, ExportSummary
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Lifecycle status of a deal, independent of its stage column."""

    ACTIVE = "active"
    WON = "won"
    LOST = "lost"


class TimeStatus(str, Enum):
    """How long a deal has been sitting in its current stage."""

    NORMAL = "normal"
    WARNING = "warning"
    DANGER = "danger"


class DealSize(str, Enum):
    """Value bucket a deal falls into (see metrics.deal_size)."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    ENTERPRISE = "enterprise"


class QuickFilter(str, Enum):
    """Predefined filter shortcuts applied before the general predicate set."""

    MY_DEALS = "my_deals"
    HOT_DEALS = "hot_deals"
    CLOSING_SOON = "closing_soon"
    STALE_DEALS = "stale_deals"
    RECENT = "recent"
    ALL = "all"


class DateField(str, Enum):
    """Deal timestamp a date-range predicate is evaluated against."""

    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    STAGE_CHANGED_AT = "stage_changed_at"
    EXPECTED_CLOSE_DATE = "expected_close_date"


class SortMode(str, Enum):
    """Ordering applied to each board column when seeding."""

    MANUAL = "manual"
    VALUE = "value"
    DATE = "date"
    ALPHA = "alpha"


# ── Stage Catalog ───────────────────────────────────────────────────────────


class Stage(BaseModel):
    """A pipeline column with its display color and default win probability."""

    id: str
    name: str
    color: str = "#3b82f6"
    order_position: int = 0
    default_probability: float = Field(default=0.0, ge=0.0, le=100.0)


# ── Deals ───────────────────────────────────────────────────────────────────


class Deal(BaseModel):
    """A sales opportunity as held by the store and the board.

    ``probability`` is a percentage (0-100). When it is None the stage's
    default probability applies (see metrics.resolve_probability).
    """

    id: str
    name: str
    company: str = ""
    company_id: str | None = None
    contact_name: str = ""
    contact_id: str | None = None
    value: Decimal = Decimal("0")
    stage_id: str
    owner_id: str
    status: DealStatus = DealStatus.ACTIVE
    probability: float | None = Field(default=None, ge=0.0, le=100.0)
    expected_close_date: datetime | None = None
    priority: str | None = None
    lead_source: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    stage_changed_at: datetime | None = None


class DealCreate(BaseModel):
    """Schema for creating a new deal."""

    name: str
    company: str = ""
    company_id: str | None = None
    contact_name: str = ""
    contact_id: str | None = None
    value: Decimal = Decimal("0")
    stage_id: str
    owner_id: str
    status: DealStatus = DealStatus.ACTIVE
    probability: float | None = Field(default=None, ge=0.0, le=100.0)
    expected_close_date: datetime | None = None
    priority: str | None = None
    lead_source: str | None = None
    tags: list[str] = Field(default_factory=list)


class DealUpdate(BaseModel):
    """Schema for updating a deal (all fields optional)."""

    name: str | None = None
    company: str | None = None
    company_id: str | None = None
    contact_name: str | None = None
    contact_id: str | None = None
    value: Decimal | None = None
    stage_id: str | None = None
    owner_id: str | None = None
    status: DealStatus | None = None
    probability: float | None = Field(default=None, ge=0.0, le=100.0)
    expected_close_date: datetime | None = None
    priority: str | None = None
    lead_source: str | None = None
    tags: list[str] | None = None


# ── Filtering ───────────────────────────────────────────────────────────────


class FilterSet(BaseModel):
    """Structured predicate set for the pipeline board.

    Every predicate is optional: None or an empty list means "no constraint".
    All active predicates are ANDed; ``quick_filter`` runs first as a
    pre-pass over the full deal list.
    """

    min_value: Decimal | None = None
    max_value: Decimal | None = None
    min_probability: float | None = Field(default=None, ge=0.0, le=100.0)
    tags: list[str] = Field(default_factory=list)
    date_field: DateField = DateField.CREATED_AT
    date_from: datetime | None = None
    date_to: datetime | None = None
    stage_ids: list[str] = Field(default_factory=list)
    priorities: list[str] = Field(default_factory=list)
    deal_sizes: list[DealSize] = Field(default_factory=list)
    lead_sources: list[str] = Field(default_factory=list)
    min_days_in_stage: int | None = Field(default=None, ge=0)
    max_days_in_stage: int | None = Field(default=None, ge=0)
    time_statuses: list[TimeStatus] = Field(default_factory=list)
    quick_filter: QuickFilter = QuickFilter.ALL


class ViewState(BaseModel):
    """Everything the board view depends on besides the data itself."""

    current_user_id: str | None = None
    owner_id: str | None = None
    search_term: str = ""
    filters: FilterSet = Field(default_factory=FilterSet)


# ── Derived Output ──────────────────────────────────────────────────────────


class StageMetric(BaseModel):
    """Per-column aggregate over the retained deals."""

    stage_id: str
    stage_name: str
    count: int = 0
    value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")


class CardBadge(BaseModel):
    """Time-in-stage badge shown on a deal card."""

    status: TimeStatus
    text: str


class PipelineView(BaseModel):
    """Output of the filter & aggregation engine."""

    by_stage: dict[str, list[Deal]] = Field(default_factory=dict)
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")
    active_weighted_value: Decimal = Decimal("0")
    stage_metrics: list[StageMetric] = Field(default_factory=list)
    deal_count: int = 0


# ── Store Results ───────────────────────────────────────────────────────────


class MutationResult(BaseModel):
    """Outcome of a Deal Store mutation. ``deal`` is None for deletes."""

    ok: bool
    deal: Deal | None = None
    error: str | None = None


# ── Export ──────────────────────────────────────────────────────────────────


class StageBreakdown(BaseModel):
    count: int = 0
    value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")


class ExportSummary(BaseModel):
    """Headline numbers for a set of exported deals."""

    total_deals: int = 0
    total_value: Decimal = Decimal("0")
    total_weighted_value: Decimal = Decimal("0")
    stage_breakdown: dict[str, StageBreakdown] = Field(default_factory=dict)
    average_deal_size: Decimal = Decimal("0")
    average_days_in_stage: float = 0.0
    owners: list[str] = Field(default_factory=list)
    companies: list[str] = Field(default_factory=list)
    created_from: datetime | None = None
    created_to: datetime | None = None
