"""Derived per-deal values -- time in stage, status badges, probability, size.

Deal records carry several optional fields with fallback chains. The helpers
here resolve each one in a single documented place so the filter engine, the
board and the export agree:

- days_in_stage: whole days since stage_changed_at (0 when unknown)
- time_status: header/filter thresholds (>30d danger, >14d warning)
- card_badge: per-card thresholds (>14d danger, >7d warning, 0d "New")
- resolve_probability: deal probability -> stage default -> 0
- weighted_value: value scaled by the resolved probability
- deal_size: value bucket used by the deal-size predicate
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from src.crm.pipeline.schemas import CardBadge, Deal, DealSize, Stage, TimeStatus

# Header / filter context thresholds (days)
STAGE_WARNING_DAYS = 14
STAGE_DANGER_DAYS = 30

# Per-card badge thresholds (days)
CARD_WARNING_DAYS = 7
CARD_DANGER_DAYS = 14

# Upper bounds (exclusive) of the deal-size buckets
DEAL_SIZE_BOUNDS: list[tuple[Decimal, DealSize]] = [
    (Decimal("5000"), DealSize.SMALL),
    (Decimal("25000"), DealSize.MEDIUM),
    (Decimal("100000"), DealSize.LARGE),
]

_HUNDRED = Decimal("100")
_ONE_DAY = timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_in_stage(deal: Deal, now: datetime | None = None) -> int:
    """Whole days the deal has spent in its current stage."""
    if deal.stage_changed_at is None:
        return 0
    now = as_aware(now or utcnow())
    elapsed = now - as_aware(deal.stage_changed_at)
    return max(elapsed // _ONE_DAY, 0)


def time_status(days: int) -> TimeStatus:
    """Time status used by the board header and the time-status filter."""
    if days > STAGE_DANGER_DAYS:
        return TimeStatus.DANGER
    if days > STAGE_WARNING_DAYS:
        return TimeStatus.WARNING
    return TimeStatus.NORMAL


def deal_time_status(deal: Deal, now: datetime | None = None) -> TimeStatus:
    return time_status(days_in_stage(deal, now))


def card_badge(days: int) -> CardBadge:
    """Badge rendered on a deal card.

    Cards use tighter thresholds than the header so attention is drawn
    to a deal a week before it shows up as a pipeline warning.
    """
    if not days:
        return CardBadge(status=TimeStatus.NORMAL, text="New")
    if days > CARD_DANGER_DAYS:
        return CardBadge(status=TimeStatus.DANGER, text=f"{days}d")
    if days > CARD_WARNING_DAYS:
        return CardBadge(status=TimeStatus.WARNING, text=f"{days}d")
    return CardBadge(status=TimeStatus.NORMAL, text=f"{days}d")


def resolve_probability(deal: Deal, stage: Stage | None) -> Decimal:
    """Win probability (percent) for a deal.

    Fallback order:
    1. The deal's own probability, when set and non-zero
    2. The stage's default probability
    3. Zero
    """
    if deal.probability:
        return Decimal(str(deal.probability))
    if stage is not None and stage.default_probability:
        return Decimal(str(stage.default_probability))
    return Decimal("0")


def weighted_value(deal: Deal, stage: Stage | None) -> Decimal:
    """Deal value scaled by its resolved win probability."""
    return deal.value * resolve_probability(deal, stage) / _HUNDRED


def deal_size(value: Decimal) -> DealSize:
    for bound, size in DEAL_SIZE_BOUNDS:
        if value < bound:
            return size
    return DealSize.ENTERPRISE


def stages_by_id(stages: list[Stage]) -> dict[str, Stage]:
    return {stage.id: stage for stage in stages}


def normalize_stage_name(name: str) -> str:
    """Lower-case a stage name and collapse '/', '_' and '-' into spaces."""
    for sep in ("/", "_", "-"):
        name = name.replace(sep, " ")
    return " ".join(name.lower().split())


def is_closed_stage(stage: Stage) -> bool:
    """Closed stages (won or lost) are excluded from active weighted value."""
    return "closed" in stage.name.lower()


def is_won_stage(stage: Stage, pattern: str = "closed won") -> bool:
    """True when the stage name matches the won-stage pattern.

    "Closed Won", "closed_won" and "Closed/Won" all match; a bare "Won"
    does not.
    """
    return normalize_stage_name(pattern) in normalize_stage_name(stage.name)
