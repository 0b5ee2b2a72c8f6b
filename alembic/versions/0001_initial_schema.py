"""Initial schema: users, usage tracking, image assets, prediction results.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=320)),
        sa.Column("full_name", sa.String(length=200)),
        sa.Column("plan_type", sa.String(length=20), nullable=False, server_default="registered"),
        sa.Column("generations_used_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_generation_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("plan_type IN ('registered', 'premium')", name="ck_users_plan_type"),
        sa.CheckConstraint("generations_used_today >= 0", name="ck_users_generations_non_negative"),
    )

    op.create_table(
        "usage_tracking",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("generations_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("ip_address", "date", name="uq_usage_tracking_ip_date"),
        sa.CheckConstraint("generations_used >= 0", name="ck_usage_tracking_non_negative"),
    )

    op.create_table(
        "image_assets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column("character_name", sa.String(length=200), nullable=False),
        sa.Column("character_description", sa.Text(), nullable=False),
        sa.Column("question_theme", sa.String(length=20)),
        sa.Column("form_type", sa.String(length=50), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("usage_count >= 0", name="ck_image_assets_usage_non_negative"),
    )
    op.create_index(
        "ix_image_assets_lookup",
        "image_assets",
        ["is_active", "form_type", "question_theme"],
    )

    op.create_table(
        "prediction_results",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("user_id", sa.String(length=64), sa.ForeignKey("users.id")),
        sa.Column("client_ip", sa.String(length=64)),
        sa.Column("form_type", sa.String(length=50), nullable=False),
        sa.Column("user_name", sa.String(length=50), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("birth_month", sa.String(length=2), nullable=False),
        sa.Column("birth_year", sa.String(length=4), nullable=False),
        sa.Column("character_name", sa.String(length=200), nullable=False),
        sa.Column("character_description", sa.Text(), nullable=False),
        sa.Column("prediction_text", sa.Text(), nullable=False),
        sa.Column("image_variants", json_type),
        sa.Column("question_theme", sa.String(length=20)),
        sa.Column("generation_source", sa.String(length=30)),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_used_at", sa.DateTime(timezone=True)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", json_type),
    )
    op.create_index(
        "ix_prediction_results_user_created",
        "prediction_results",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_prediction_results_user_created", table_name="prediction_results")
    op.drop_table("prediction_results")
    op.drop_index("ix_image_assets_lookup", table_name="image_assets")
    op.drop_table("image_assets")
    op.drop_table("usage_tracking")
    op.drop_table("users")
