"""create billing tables

Revision ID: a3f9c2d1e7b4
Revises:
Create Date: 2026-01-14 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "a3f9c2d1e7b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _get_inspector():
    conn = op.get_bind()
    return conn, sa.inspect(conn)


def _table_exists(inspector, table_name: str) -> bool:
    try:
        return table_name in inspector.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    _, inspector = _get_inspector()

    if not _table_exists(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("username", sa.String(length=64), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        )
        op.create_index("ix_users_username", "users", ["username"], unique=True)

    if not _table_exists(inspector, "plans"):
        op.create_table(
            "plans",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price", sa.Integer(), nullable=False),
            sa.Column("duration", sa.Integer(), nullable=False),
            sa.Column("traffic_limit", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        )

    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("order_no", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("plan_id", sa.String(length=36), sa.ForeignKey("plans.id"), nullable=False),
            sa.Column("original_amount", sa.Integer(), nullable=False),
            sa.Column("pay_amount", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("expired_at", sa.DateTime(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.CheckConstraint("pay_amount <= original_amount", name="ck_orders_pay_amount"),
        )
        op.create_index("ix_orders_order_no", "orders", ["order_no"], unique=True)
        op.create_index("ix_orders_user_id", "orders", ["user_id"])
        op.create_index("ix_orders_plan_id", "orders", ["plan_id"])
        op.create_index("ix_orders_status", "orders", ["status"])
        op.create_index("ix_orders_expired_at", "orders", ["expired_at"])
        op.create_index("ix_orders_created_at", "orders", ["created_at"])

    if not _table_exists(inspector, "balance_transactions"):
        op.create_table(
            "balance_transactions",
            sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("description", sa.String(length=256), nullable=True),
            sa.Column("operator", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        )
        op.create_index("ix_balance_transactions_user_id", "balance_transactions", ["user_id"])
        op.create_index("ix_balance_transactions_order_id", "balance_transactions", ["order_id"])
        op.create_index("ix_balance_transactions_created_at", "balance_transactions", ["created_at"])

    if not _table_exists(inspector, "pending_downgrades"):
        op.create_table(
            "pending_downgrades",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("current_plan_id", sa.String(length=36), sa.ForeignKey("plans.id"), nullable=False),
            sa.Column("new_plan_id", sa.String(length=36), sa.ForeignKey("plans.id"), nullable=False),
            sa.Column("effective_at", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.UniqueConstraint("user_id", name="uq_pending_downgrades_user_id"),
        )
        op.create_index("ix_pending_downgrades_effective_at", "pending_downgrades", ["effective_at"])


def downgrade() -> None:
    op.drop_index("ix_pending_downgrades_effective_at", table_name="pending_downgrades")
    op.drop_table("pending_downgrades")
    op.drop_index("ix_balance_transactions_created_at", table_name="balance_transactions")
    op.drop_index("ix_balance_transactions_order_id", table_name="balance_transactions")
    op.drop_index("ix_balance_transactions_user_id", table_name="balance_transactions")
    op.drop_table("balance_transactions")
    op.drop_index("ix_orders_created_at", table_name="orders")
    op.drop_index("ix_orders_expired_at", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_plan_id", table_name="orders")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_index("ix_orders_order_no", table_name="orders")
    op.drop_table("orders")
    op.drop_table("plans")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
