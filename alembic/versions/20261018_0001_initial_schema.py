"""Initial schema: cursor, users, transactions, swap events, rate updates, metrics, leaderboard.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)


def upgrade() -> None:
    op.create_table(
        "indexer_cursors",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("eth_amount", UINT256, nullable=False),
        sa.Column("token_amount", UINT256, nullable=False),
        sa.Column("tx_type", sa.String(24), nullable=False),
        sa.Column("status", sa.String(12), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("block_hash", sa.String(66), nullable=True),
        sa.Column("gas_used", UINT256, nullable=True),
        sa.Column("gas_price", UINT256, nullable=True),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash"),
    )
    op.create_index("idx_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_index("idx_transactions_status_type", "transactions", ["status", "tx_type"])
    op.create_index("idx_transactions_block", "transactions", ["block_number"])

    op.create_table(
        "swap_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("buyer", sa.String(42), nullable=False),
        sa.Column("eth_amount", UINT256, nullable=False),
        sa.Column("token_amount", UINT256, nullable=False),
        sa.Column("tokens_per_eth", UINT256, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_swap_events_tx_log"),
    )
    op.create_index("idx_swap_events_buyer", "swap_events", ["buyer"])
    op.create_index("idx_swap_events_created", "swap_events", ["created_at"])
    op.create_index("idx_swap_events_block", "swap_events", ["block_number", "log_index"])

    op.create_table(
        "rate_updates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("old_rate", UINT256, nullable=True),
        sa.Column("new_rate", UINT256, nullable=False),
        sa.Column("updated_by", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_rate_updates_tx_log", "rate_updates", ["tx_hash", "log_index"], unique=True)
    op.create_index("idx_rate_updates_block", "rate_updates", ["block_number", "log_index"])

    op.create_table(
        "token_metrics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_supply", UINT256, nullable=False),
        sa.Column("contract_balance", UINT256, nullable=False),
        sa.Column("total_swaps", sa.BigInteger(), nullable=False),
        sa.Column("total_volume_eth", UINT256, nullable=False),
        sa.Column("total_volume_tokens", UINT256, nullable=False),
        sa.Column("unique_users", sa.BigInteger(), nullable=False),
        sa.Column("tokens_per_eth", UINT256, nullable=False),
        sa.Column("price_in_eth", sa.Numeric(40, 30), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_token_metrics_timestamp", "token_metrics", ["timestamp"])

    op.create_table(
        "leaderboard",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("period", sa.String(10), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_swaps", sa.BigInteger(), nullable=False),
        sa.Column("total_volume_eth", UINT256, nullable=False),
        sa.Column("total_volume_tokens", UINT256, nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "period",
            "wallet_address",
            "period_start",
            name="uq_leaderboard_period_wallet_start",
        ),
    )
    op.create_index("idx_leaderboard_period_start_rank", "leaderboard", ["period", "period_start", "rank"])


def downgrade() -> None:
    op.drop_index("idx_leaderboard_period_start_rank", table_name="leaderboard")
    op.drop_table("leaderboard")
    op.drop_index("idx_token_metrics_timestamp", table_name="token_metrics")
    op.drop_table("token_metrics")
    op.drop_index("idx_rate_updates_block", table_name="rate_updates")
    op.drop_index("idx_rate_updates_tx_log", table_name="rate_updates")
    op.drop_table("rate_updates")
    op.drop_index("idx_swap_events_block", table_name="swap_events")
    op.drop_index("idx_swap_events_created", table_name="swap_events")
    op.drop_index("idx_swap_events_buyer", table_name="swap_events")
    op.drop_table("swap_events")
    op.drop_index("idx_transactions_block", table_name="transactions")
    op.drop_index("idx_transactions_status_type", table_name="transactions")
    op.drop_index("idx_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("users")
    op.drop_table("indexer_cursors")
