"""Initial schema creation

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-18 10:00:00

Creates the banquet tables aligned with banquet_tracker/models/database.py:
- players
- villages
- production
- stocks
- cards
- trades

Production and stock rows are unique per (village, banquet type) and cascade
with their village. Trades hold bare player ids so the ledger outlives player
deletion.
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # players
    op.create_table(
        "players",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("stock_capacity", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # villages
    op.create_table(
        "villages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE", name="fk_villages_player_id_players"),
    )
    op.create_index("ix_villages_player_id", "villages", ["player_id"], unique=False)

    # production
    op.create_table(
        "production",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("village_id", sa.Integer(), nullable=False),
        sa.Column("banquet_type", sa.String(length=20), nullable=False),
        sa.Column("daily_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["village_id"], ["villages.id"], ondelete="CASCADE", name="fk_production_village_id_villages"),
        sa.UniqueConstraint("village_id", "banquet_type", name="uq_production_village_type"),
    )

    # stocks
    op.create_table(
        "stocks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("village_id", sa.Integer(), nullable=False),
        sa.Column("banquet_type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["village_id"], ["villages.id"], ondelete="CASCADE", name="fk_stocks_village_id_villages"),
        sa.UniqueConstraint("village_id", "banquet_type", name="uq_stocks_village_type"),
    )

    # cards
    op.create_table(
        "cards",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("banquet_type", sa.String(length=20), nullable=False),
        sa.Column("multiplier", sa.Integer(), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE", name="fk_cards_player_id_players"),
    )
    op.create_index("ix_cards_player_type", "cards", ["player_id", "banquet_type"], unique=False)
    op.create_index("ix_cards_expires_at", "cards", ["expires_at"], unique=False)

    # trades
    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("from_player_id", sa.Integer(), nullable=False),
        sa.Column("to_player_id", sa.Integer(), nullable=False),
        sa.Column("banquet_type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_trades_created_at", "trades", ["created_at"], unique=False)
    op.create_index("ix_trades_from_player", "trades", ["from_player_id"], unique=False)
    op.create_index("ix_trades_to_player", "trades", ["to_player_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_trades_to_player", table_name="trades")
    op.drop_index("ix_trades_from_player", table_name="trades")
    op.drop_index("ix_trades_created_at", table_name="trades")
    op.drop_table("trades")

    op.drop_index("ix_cards_expires_at", table_name="cards")
    op.drop_index("ix_cards_player_type", table_name="cards")
    op.drop_table("cards")

    op.drop_table("stocks")
    op.drop_table("production")

    op.drop_index("ix_villages_player_id", table_name="villages")
    op.drop_table("villages")

    op.drop_table("players")
