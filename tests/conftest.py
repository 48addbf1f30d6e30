"""Shared fixtures for the pipeline tests.

Provides:
- InMemoryStageRepository / InMemoryDealRepository test doubles with the
  same async interface as the SQLAlchemy repositories
- Factories for Stage and Deal records
- A default four-stage catalog (Lead, Proposal, Won, Closed Won)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from src.crm.config import get_settings
from src.crm.pipeline.exceptions import DealNotFoundError
from src.crm.pipeline.schemas import Deal, DealCreate, DealUpdate, Stage

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


# ── In-Memory Test Doubles ──────────────────────────────────────────────────


class InMemoryStageRepository:
    """In-memory StageRepository for testing without database."""

    def __init__(self, stages: list[Stage] | None = None) -> None:
        self._stages = list(stages or [])
        self.fail_with: Exception | None = None
        self.list_calls = 0

    async def list_stages(self) -> list[Stage]:
        self.list_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return sorted(self._stages, key=lambda s: (s.order_position, s.name))


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database.

    Returns copies so callers cannot mutate the stored records, and records
    every move call for assertions.
    """

    def __init__(self, deals: list[Deal] | None = None) -> None:
        self._deals: dict[str, Deal] = {d.id: d.model_copy() for d in deals or []}
        self.move_calls: list[tuple[str, str]] = []
        self.fail_list_with: Exception | None = None
        self.fail_writes_with: Exception | None = None

    def stored(self, deal_id: str) -> Deal:
        return self._deals[deal_id]

    async def list_deals(self, owner_id: str | None = None) -> list[Deal]:
        if self.fail_list_with is not None:
            raise self.fail_list_with
        deals = [
            d.model_copy()
            for d in self._deals.values()
            if owner_id is None or d.owner_id == owner_id
        ]
        return sorted(
            deals,
            key=lambda d: d.created_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )

    async def get_deal(self, deal_id: str) -> Deal | None:
        deal = self._deals.get(deal_id)
        return deal.model_copy() if deal else None

    async def create_deal(self, data: DealCreate) -> Deal:
        if self.fail_writes_with is not None:
            raise self.fail_writes_with
        now = datetime.now(timezone.utc)
        deal = Deal(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            stage_changed_at=now,
            **data.model_dump(),
        )
        self._deals[deal.id] = deal
        return deal.model_copy()

    async def update_deal(self, deal_id: str, data: DealUpdate) -> Deal:
        if self.fail_writes_with is not None:
            raise self.fail_writes_with
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        changes = data.model_dump(exclude_unset=True)
        now = datetime.now(timezone.utc)
        if "stage_id" in changes and changes["stage_id"] != deal.stage_id:
            changes["stage_changed_at"] = now
        updated = deal.model_copy(update={**changes, "updated_at": now})
        self._deals[deal_id] = updated
        return updated.model_copy()

    async def delete_deal(self, deal_id: str) -> None:
        if self.fail_writes_with is not None:
            raise self.fail_writes_with
        if deal_id not in self._deals:
            raise DealNotFoundError(deal_id)
        del self._deals[deal_id]

    async def move_deal_to_stage(
        self,
        deal_id: str,
        stage_id: str,
        stage_changed_at: datetime | None = None,
    ) -> Deal:
        self.move_calls.append((deal_id, stage_id))
        if self.fail_writes_with is not None:
            raise self.fail_writes_with
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        changed_at = stage_changed_at or datetime.now(timezone.utc)
        moved = deal.model_copy(
            update={
                "stage_id": stage_id,
                "stage_changed_at": changed_at,
                "updated_at": changed_at,
            }
        )
        self._deals[deal_id] = moved
        return moved.model_copy()


# ── Factories ───────────────────────────────────────────────────────────────


def build_stage(name: str, order: int, probability: float = 0.0, **kwargs: Any) -> Stage:
    return Stage(
        id=kwargs.pop("id", f"stage-{name.lower().replace(' ', '-')}"),
        name=name,
        order_position=order,
        default_probability=probability,
        **kwargs,
    )


def build_deal(deal_id: str, stage_id: str, value: str | int = 0, **kwargs: Any) -> Deal:
    defaults: dict[str, Any] = {
        "name": f"Deal {deal_id}",
        "company": f"Company {deal_id}",
        "owner_id": "user-1",
        "created_at": NOW - timedelta(days=3),
        "updated_at": NOW - timedelta(days=3),
        "stage_changed_at": NOW - timedelta(days=3),
    }
    defaults.update(kwargs)
    return Deal(id=deal_id, stage_id=stage_id, value=Decimal(str(value)), **defaults)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached per process; reset so monkeypatched env applies."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_stage():
    return build_stage


@pytest.fixture
def make_deal():
    return build_deal


@pytest.fixture
def stages() -> list[Stage]:
    return [
        build_stage("Lead", 1, 10),
        build_stage("Proposal", 2, 50),
        build_stage("Won", 3, 90),
        build_stage("Closed Won", 4, 100),
    ]


@pytest.fixture
def stage_repo(stages) -> InMemoryStageRepository:
    return InMemoryStageRepository(stages)


@pytest.fixture
def deals() -> list[Deal]:
    return [
        build_deal("d1", "stage-lead", 1000),
        build_deal("d2", "stage-lead", 2000),
        build_deal("d3", "stage-proposal", 3000, probability=40),
        build_deal("d4", "stage-proposal", 4000, owner_id="user-2"),
    ]


@pytest.fixture
def deal_repo(deals) -> InMemoryDealRepository:
    return InMemoryDealRepository(deals)
