"""Pipeline persistence models -- deal stages and deals.

Two SQLAlchemy models:
- DealStageModel: Ordered pipeline columns with default win probability
- DealModel: Sales opportunities, each sitting in exactly one stage

stage_id is enforced at the application level (Deal Store validates against
the Stage Catalog) in addition to the foreign key.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crm.core.database import Base


class DealStageModel(Base):
    """Pipeline stage (board column).

    order_position defines column order on the board; ties fall back to
    the stage name.
    """

    __tablename__ = "deal_stages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(
        String(20), default="#3b82f6", server_default=text("'#3b82f6'")
    )
    order_position: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    default_probability: Mapped[float] = mapped_column(
        Float, default=0.0, server_default=text("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealModel(Base):
    """Sales opportunity tracked through the pipeline.

    stage_changed_at is refreshed whenever stage_id changes; time-in-stage
    metrics are computed from it.
    """

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_owner_id", "owner_id"),
        Index("ix_deals_stage_id", "stage_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    company: Mapped[str] = mapped_column(
        String(300), default="", server_default=text("''")
    )
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    contact_name: Mapped[str] = mapped_column(
        String(200), default="", server_default=text("''")
    )
    primary_contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    value: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), server_default=text("0")
    )
    stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deal_stages.id"), nullable=False
    )
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="active", server_default=text("'active'")
    )
    probability: Mapped[float | None] = mapped_column(Float, nullable=True)
    expected_close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    priority: Mapped[str | None] = mapped_column(String(20), nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
    stage_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
