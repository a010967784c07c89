"""Initial schema: users, payment_records, usage_records.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Tables that already exist (e.g. created by Base.metadata.create_all on an
older deploy) are left alone, so this is safe to run on any database.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())

    if not inspector.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("external_id", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("full_name", sa.String(), nullable=True),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("free_posts_used", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("purchased_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("unlimited_until", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("purchased_credits >= 0", name="ck_users_purchased_credits_non_negative"),
        )
        op.create_index("ix_users_id", "users", ["id"])
        op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
        op.create_index("ix_users_email", "users", ["email"])

    if not inspector.has_table("payment_records"):
        op.create_table(
            "payment_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("external_payment_id", sa.String(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("payer_email", sa.String(), nullable=True),
            sa.Column("payer_name", sa.String(), nullable=True),
            sa.Column("plan_id", sa.String(), nullable=True),
            sa.Column("credits_granted", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_payment_records_id", "payment_records", ["id"])
        op.create_index(
            "ix_payment_records_external_payment_id",
            "payment_records",
            ["external_payment_id"],
            unique=True,
        )
        op.create_index("ix_payment_records_user_id", "payment_records", ["user_id"])

    if not inspector.has_table("usage_records"):
        op.create_table(
            "usage_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("allocation_kind", sa.String(), nullable=False),
            sa.Column("record_type", sa.String(), nullable=False, server_default="post"),
            sa.Column("title", sa.String(length=300), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("subreddit", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("credits_spent", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tools_used", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_usage_records_id", "usage_records", ["id"])
        op.create_index("ix_usage_records_user_created", "usage_records", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_usage_records_user_created", table_name="usage_records")
    op.drop_index("ix_usage_records_id", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_payment_records_user_id", table_name="payment_records")
    op.drop_index("ix_payment_records_external_payment_id", table_name="payment_records")
    op.drop_index("ix_payment_records_id", table_name="payment_records")
    op.drop_table("payment_records")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
