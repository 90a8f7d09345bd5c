from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.polimaks.models import Base

if TYPE_CHECKING:
    from app.polimaks.modules.clients.models import Client


class FinanceEntry(Base):
    """Cash book row: money in (income) or out (expense) by cash or transfer."""

    __tablename__ = "finance_entries"
    __table_args__ = (
        Index("idx_finance_entries_date", "date"),
        Index("idx_finance_entries_method", "method", "direction"),
        Index("idx_finance_entries_client", "client_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)  # income | expense
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="cash")  # cash | transfer
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="UZS")
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    exchange_rate: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    client: Mapped["Client | None"] = relationship("Client", lazy="selectin")


class RateOverride(Base):
    """Manual exchange rate for one currency on one day (units per 1 USD)."""

    __tablename__ = "rate_overrides"
    __table_args__ = (
        UniqueConstraint("date", "currency", name="uq_rate_overrides_date_currency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
