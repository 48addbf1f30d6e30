"""Pipeline tables: deal_stages and deals.

Revision ID: 001_pipeline_tables
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_pipeline_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deal_stages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(20), server_default=sa.text("'#3b82f6'")),
        sa.Column("order_position", sa.Integer(), server_default=sa.text("0")),
        sa.Column("default_probability", sa.Float(), server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "deals",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("company", sa.String(300), server_default=sa.text("''")),
        sa.Column("company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("contact_name", sa.String(200), server_default=sa.text("''")),
        sa.Column("primary_contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("value", sa.Numeric(14, 2), server_default=sa.text("0")),
        sa.Column("stage_id", UUID(as_uuid=True), sa.ForeignKey("deal_stages.id"), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'active'")),
        sa.Column("probability", sa.Float(), nullable=True),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.String(20), nullable=True),
        sa.Column("lead_source", sa.String(100), nullable=True),
        sa.Column("tags", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stage_changed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_deals_owner_id", "deals", ["owner_id"])
    op.create_index("ix_deals_stage_id", "deals", ["stage_id"])


def downgrade() -> None:
    op.drop_index("ix_deals_stage_id", table_name="deals")
    op.drop_index("ix_deals_owner_id", table_name="deals")
    op.drop_table("deals")
    op.drop_table("deal_stages")
