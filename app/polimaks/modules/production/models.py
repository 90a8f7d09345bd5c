from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.polimaks.models import Base

if TYPE_CHECKING:
    from app.polimaks.modules.clients.models import Order
    from app.polimaks.modules.machines.models import Brigade, Machine


class ProductionPlan(Base):
    __tablename__ = "production_plans"
    __table_args__ = (
        Index("idx_production_plans_machine", "machine_id"),
        Index("idx_production_plans_order", "order_id"),
        Index("idx_production_plans_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False)
    machine_type: Mapped[str] = mapped_column(String(32), nullable=False)
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="RESTRICT"), nullable=False)
    brigade_id: Mapped[int | None] = mapped_column(ForeignKey("brigades.id", ondelete="SET NULL"), nullable=True)
    start_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="planning")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    order: Mapped["Order"] = relationship("Order", lazy="selectin")
    machine: Mapped["Machine"] = relationship("Machine", lazy="selectin")
    brigade: Mapped["Brigade | None"] = relationship("Brigade", lazy="selectin")
    usages: Mapped[list["MaterialUsage"]] = relationship(
        "MaterialUsage",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MaterialUsage.created_at",
    )


class MaterialUsage(Base):
    """Material issued to a plan, priced at the moment it was issued."""

    __tablename__ = "material_usages"
    __table_args__ = (
        Index("idx_material_usages_plan", "plan_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("production_plans.id", ondelete="CASCADE"), nullable=False)
    stock_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_transactions.id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="kg")
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="UZS")
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    plan: Mapped["ProductionPlan"] = relationship("ProductionPlan", back_populates="usages")

    @property
    def cost(self) -> float:
        return round(self.amount * self.unit_price, 2)
