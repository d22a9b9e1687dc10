"""SQLAlchemy ORM models for persistent banquet data.

Mirrors the dataclasses in banquet_tracker/models/components.py. Rates and
snapshots are keyed by (village, banquet type) and cascade with their
village; trades reference players by id only so the ledger survives player
deletion.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Player(Base):
    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    stock_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    villages: Mapped[List["Village"]] = relationship("Village", back_populates="player", cascade="all, delete-orphan", passive_deletes=True)


class Village(Base):
    __tablename__ = "villages"
    __table_args__ = (
        Index("ix_villages_player_id", "player_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    player: Mapped["Player"] = relationship("Player", back_populates="villages")


class Production(Base):
    __tablename__ = "production"
    __table_args__ = (
        UniqueConstraint("village_id", "banquet_type", name="uq_production_village_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    village_id: Mapped[int] = mapped_column(ForeignKey("villages.id", ondelete="CASCADE"), nullable=False)
    banquet_type: Mapped[str] = mapped_column(String(20), nullable=False)
    daily_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Stock(Base):
    __tablename__ = "stocks"
    __table_args__ = (
        UniqueConstraint("village_id", "banquet_type", name="uq_stocks_village_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    village_id: Mapped[int] = mapped_column(ForeignKey("villages.id", ondelete="CASCADE"), nullable=False)
    banquet_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    # Incremented on every write; compared by optimistic snapshot updates
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class Card(Base):
    __tablename__ = "cards"
    __table_args__ = (
        Index("ix_cards_player_type", "player_id", "banquet_type"),
        Index("ix_cards_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    banquet_type: Mapped[str] = mapped_column(String(20), nullable=False)
    multiplier: Mapped[int] = mapped_column(Integer, nullable=False)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_created_at", "created_at"),
        Index("ix_trades_from_player", "from_player_id"),
        Index("ix_trades_to_player", "to_player_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_player_id: Mapped[int] = mapped_column(Integer, nullable=False)
    to_player_id: Mapped[int] = mapped_column(Integer, nullable=False)
    banquet_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
