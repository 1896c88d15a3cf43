"""generation lifecycle, public mirror, stats and credit ledger tables

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_code", sa.String(), nullable=False, server_default="FREE"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="CONFIRMED"),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_credit_ledger_user_key"),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"], unique=False)
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"], unique=False)
    op.create_index("ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"], unique=False)

    op.create_table(
        "generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("generation_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="generating"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("public_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("visibility", sa.String(), nullable=False, server_default="private"),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column("videos", sa.JSON(), nullable=False),
        sa.Column("audios", sa.JSON(), nullable=False),
        sa.Column("input_images", sa.JSON(), nullable=False),
        sa.Column("input_videos", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("nsfw", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("aspect_ratio", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("provider_task_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generations_user_id", "generations", ["user_id"], unique=False)
    op.create_index("ix_generations_user_created", "generations", ["user_id", "created_at", "id"], unique=False)
    op.create_index("ix_generations_user_updated", "generations", ["user_id", "updated_at", "id"], unique=False)
    op.create_index(
        "ix_generations_user_status_created", "generations", ["user_id", "status", "created_at", "id"], unique=False
    )
    op.create_index(
        "ix_generations_user_status_updated", "generations", ["user_id", "status", "updated_at", "id"], unique=False
    )
    op.create_index(
        "ix_generations_user_type_created",
        "generations",
        ["user_id", "generation_type", "created_at", "id"],
        unique=False,
    )
    op.create_index(
        "ix_generations_user_type_updated",
        "generations",
        ["user_id", "generation_type", "updated_at", "id"],
        unique=False,
    )
    op.create_index(
        "ix_generations_provider_task", "generations", ["user_id", "provider", "provider_task_id"], unique=False
    )

    op.create_table(
        "public_generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("generation_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("visibility", sa.String(), nullable=False, server_default="public"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column("videos", sa.JSON(), nullable=False),
        sa.Column("audios", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("nsfw", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("aspect_ratio", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("mirrored_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_public_generations_created", "public_generations", ["created_at", "id"], unique=False)
    op.create_index("ix_public_generations_updated", "public_generations", ["updated_at", "id"], unique=False)
    op.create_index(
        "ix_public_generations_type_created",
        "public_generations",
        ["generation_type", "created_at", "id"],
        unique=False,
    )
    op.create_index(
        "ix_public_generations_user_created", "public_generations", ["user_id", "created_at", "id"], unique=False
    )

    op.create_table(
        "generation_stat_counters",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("dimension", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("user_id", "dimension", "key"),
    )


def downgrade() -> None:
    op.drop_table("generation_stat_counters")

    op.drop_index("ix_public_generations_user_created", table_name="public_generations")
    op.drop_index("ix_public_generations_type_created", table_name="public_generations")
    op.drop_index("ix_public_generations_updated", table_name="public_generations")
    op.drop_index("ix_public_generations_created", table_name="public_generations")
    op.drop_table("public_generations")

    op.drop_index("ix_generations_provider_task", table_name="generations")
    op.drop_index("ix_generations_user_type_updated", table_name="generations")
    op.drop_index("ix_generations_user_type_created", table_name="generations")
    op.drop_index("ix_generations_user_status_updated", table_name="generations")
    op.drop_index("ix_generations_user_status_created", table_name="generations")
    op.drop_index("ix_generations_user_updated", table_name="generations")
    op.drop_index("ix_generations_user_created", table_name="generations")
    op.drop_index("ix_generations_user_id", table_name="generations")
    op.drop_table("generations")

    op.drop_index("ix_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_table("user_accounts")
