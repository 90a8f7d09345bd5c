from __future__ import annotations

import datetime as dt
from datetime import datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.polimaks.models import Base


class Mixture(Base):
    """
    Solvent blend. `initial_liter` is what the components added up to;
    `total_liter` is the current balance after mixture transactions.
    """

    __tablename__ = "mixtures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    initial_liter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_liter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_per_liter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    created_date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=dt.date.today)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    components: Mapped[list["MixtureComponent"]] = relationship(
        "MixtureComponent",
        back_populates="mixture",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MixtureComponent.solvent_type",
    )
    transactions: Mapped[list["MixtureTransaction"]] = relationship(
        "MixtureTransaction",
        back_populates="mixture",
        cascade="all, delete-orphan",
        lazy="select",
    )


class MixtureComponent(Base):
    __tablename__ = "mixture_components"
    __table_args__ = (
        UniqueConstraint("mixture_id", "solvent_type", name="uq_mixture_components_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mixture_id: Mapped[int] = mapped_column(ForeignKey("mixtures.id", ondelete="CASCADE"), nullable=False)
    solvent_id: Mapped[int | None] = mapped_column(ForeignKey("inventory_solvents.id", ondelete="SET NULL"), nullable=True)
    solvent_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_liter: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    mixture: Mapped["Mixture"] = relationship("Mixture", back_populates="components")


class MixtureTransaction(Base):
    __tablename__ = "mixture_transactions"
    __table_args__ = (
        Index("idx_mixture_transactions_mixture", "mixture_id"),
        Index("idx_mixture_transactions_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mixture_id: Mapped[int] = mapped_column(ForeignKey("mixtures.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)  # in | out
    amount_liter: Mapped[float] = mapped_column(Float, nullable=False)
    machine_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    machine_id: Mapped[int | None] = mapped_column(ForeignKey("machines.id", ondelete="SET NULL"), nullable=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    mixture: Mapped["Mixture"] = relationship("Mixture", back_populates="transactions")
