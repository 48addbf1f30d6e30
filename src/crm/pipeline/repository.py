"""Pipeline repositories -- async access to deal stages and deals.

Provides StageRepository and DealRepository with the session_factory callable
pattern: each method opens a session from the factory, runs its statement and
converts SQLAlchemy models into Pydantic schemas before returning.

DealRepository is the remote half of the Deal Store. It keeps the
stage_changed_at invariant on the write path: any write that changes
stage_id also stamps stage_changed_at.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.pipeline.exceptions import DealNotFoundError, InvalidStageError
from src.crm.pipeline.models import DealModel, DealStageModel
from src.crm.pipeline.schemas import (
    Deal,
    DealCreate,
    DealStatus,
    DealUpdate,
    Stage,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

# DealUpdate field -> DealModel attribute, where they differ
_FIELD_COLUMNS: dict[str, str] = {
    "contact_id": "primary_contact_id",
}

_UUID_FIELDS = {"company_id", "contact_id", "stage_id"}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_stage(model: DealStageModel) -> Stage:
    """Convert DealStageModel to Stage schema."""
    return Stage(
        id=str(model.id),
        name=model.name,
        color=model.color or "#3b82f6",
        order_position=model.order_position or 0,
        default_probability=model.default_probability or 0.0,
    )


def _model_to_deal(model: DealModel) -> Deal:
    """Convert DealModel to Deal schema."""
    try:
        status = DealStatus(model.status)
    except ValueError:
        status = DealStatus.ACTIVE

    return Deal(
        id=str(model.id),
        name=model.name,
        company=model.company or "",
        company_id=str(model.company_id) if model.company_id else None,
        contact_name=model.contact_name or "",
        contact_id=(
            str(model.primary_contact_id) if model.primary_contact_id else None
        ),
        value=model.value if model.value is not None else 0,
        stage_id=str(model.stage_id),
        owner_id=model.owner_id,
        status=status,
        probability=model.probability,
        expected_close_date=model.expected_close_date,
        priority=model.priority,
        lead_source=model.lead_source,
        tags=list(model.tags or []),
        created_at=model.created_at,
        updated_at=model.updated_at,
        stage_changed_at=model.stage_changed_at,
    )


def _deal_uuid(deal_id: str) -> uuid.UUID:
    """Parse a deal id; malformed ids cannot exist, so they are not found."""
    try:
        return uuid.UUID(deal_id)
    except ValueError:
        raise DealNotFoundError(deal_id) from None


def _stage_uuid(stage_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(stage_id)
    except ValueError:
        raise InvalidStageError(stage_id) from None


def _optional_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


# ── Stage Repository ────────────────────────────────────────────────────────


class StageRepository:
    """Read access to the pipeline stage catalog.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def list_stages(self) -> list[Stage]:
        """List all stages in board order (order_position, then name)."""
        async for session in self._session_factory():
            stmt = select(DealStageModel).order_by(
                DealStageModel.order_position, DealStageModel.name
            )
            result = await session.execute(stmt)
            return [_model_to_stage(m) for m in result.scalars().all()]
        return []


# ── Deal Repository ─────────────────────────────────────────────────────────


class DealRepository:
    """Async CRUD for deals, keyed by UUID and scoped by owner.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def list_deals(self, owner_id: str | None = None) -> list[Deal]:
        """List deals, newest first, optionally restricted to one owner.

        Args:
            owner_id: Owner identifier to filter by (None lists every owner).

        Returns:
            List of Deal objects.
        """
        async for session in self._session_factory():
            stmt = select(DealModel)
            if owner_id is not None:
                stmt = stmt.where(DealModel.owner_id == owner_id)
            stmt = stmt.order_by(DealModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]
        return []

    async def get_deal(self, deal_id: str) -> Deal | None:
        """Get a deal by ID, or None if it does not exist."""
        async for session in self._session_factory():
            try:
                key = _deal_uuid(deal_id)
            except DealNotFoundError:
                return None
            model = await session.get(DealModel, key)
            if model is None:
                return None
            return _model_to_deal(model)
        return None

    async def create_deal(self, data: DealCreate) -> Deal:
        """Create a deal. created_at, updated_at and stage_changed_at start at now.

        Raises:
            InvalidStageError: If stage_id is not a valid stage identifier.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = DealModel(
                name=data.name,
                company=data.company,
                company_id=_optional_uuid(data.company_id),
                contact_name=data.contact_name,
                primary_contact_id=_optional_uuid(data.contact_id),
                value=data.value,
                stage_id=_stage_uuid(data.stage_id),
                owner_id=data.owner_id,
                status=data.status.value,
                probability=data.probability,
                expected_close_date=data.expected_close_date,
                priority=data.priority,
                lead_source=data.lead_source,
                tags=list(data.tags),
                created_at=now,
                updated_at=now,
                stage_changed_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("deal_repository.deal_created", deal_id=str(model.id))
            return _model_to_deal(model)
        raise RuntimeError("session factory yielded no session")

    async def update_deal(self, deal_id: str, data: DealUpdate) -> Deal:
        """Update only the fields present in ``data``.

        A change of stage_id also refreshes stage_changed_at.

        Raises:
            DealNotFoundError: If the deal does not exist.
            InvalidStageError: If stage_id is not a valid stage identifier.
        """
        key = _deal_uuid(deal_id)
        async for session in self._session_factory():
            model = await session.get(DealModel, key)
            if model is None:
                raise DealNotFoundError(deal_id)

            now = datetime.now(timezone.utc)
            for field, value in data.model_dump(exclude_unset=True).items():
                if field == "stage_id":
                    if value is None:
                        continue
                    value = _stage_uuid(value)
                    if value != model.stage_id:
                        model.stage_changed_at = now
                elif field in _UUID_FIELDS:
                    value = _optional_uuid(value)
                elif field == "status" and value is not None:
                    value = DealStatus(value).value
                elif field == "tags" and value is None:
                    value = []
                setattr(model, _FIELD_COLUMNS.get(field, field), value)

            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)
        raise RuntimeError("session factory yielded no session")

    async def delete_deal(self, deal_id: str) -> None:
        """Delete a deal.

        Raises:
            DealNotFoundError: If the deal does not exist.
        """
        key = _deal_uuid(deal_id)
        async for session in self._session_factory():
            model = await session.get(DealModel, key)
            if model is None:
                raise DealNotFoundError(deal_id)
            await session.delete(model)
            await session.commit()
            logger.info("deal_repository.deal_deleted", deal_id=deal_id)
            return

    async def move_deal_to_stage(
        self,
        deal_id: str,
        stage_id: str,
        stage_changed_at: datetime | None = None,
    ) -> Deal:
        """Set a deal's stage and stamp stage_changed_at.

        Args:
            deal_id: Deal UUID string.
            stage_id: Destination stage UUID string.
            stage_changed_at: Timestamp to record (defaults to now).

        Raises:
            DealNotFoundError: If the deal does not exist.
            InvalidStageError: If stage_id is not a valid stage identifier.
        """
        key = _deal_uuid(deal_id)
        stage_key = _stage_uuid(stage_id)
        changed_at = stage_changed_at or datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = await session.get(DealModel, key)
            if model is None:
                raise DealNotFoundError(deal_id)
            model.stage_id = stage_key
            model.stage_changed_at = changed_at
            model.updated_at = changed_at
            await session.commit()
            await session.refresh(model)
            logger.info(
                "deal_repository.deal_moved",
                deal_id=deal_id,
                stage_id=stage_id,
            )
            return _model_to_deal(model)
        raise RuntimeError("session factory yielded no session")
