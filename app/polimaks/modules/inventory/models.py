from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import ClassVar

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from app.polimaks.models import Base


class StockItemMixin:
    """
    Columns shared by every warehouse item.

    `quantity` is derived: initial_quantity + ledger ins - ledger outs,
    clamped at zero. It is rewritten by the inventory service after every
    ledger change and never edited directly.
    """

    KIND: ClassVar[str] = ""
    UNIT: ClassVar[str] = "kg"
    PRICE_FIELD: ClassVar[str] = "price"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    initial_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="UZS")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=dt.date.today)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @declared_attr
    def created_by_user_id(cls) -> Mapped[int | None]:
        return mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @property
    def unit_price(self) -> float:
        return float(getattr(self, self.PRICE_FIELD) or 0)

    @property
    def label(self) -> str:
        return f"#{self.id}"


class Film(StockItemMixin, Base):
    __tablename__ = "inventory_films"
    KIND = "film"
    PRICE_FIELD = "price_per_kg"

    category: Mapped[str] = mapped_column(String(16), nullable=False, default="BOPP")
    subcategory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    thickness: Mapped[float] = mapped_column(Float, nullable=False, default=0)  # microns
    width: Mapped[float] = mapped_column(Float, nullable=False, default=0)  # mm
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    series_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    admin: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def label(self) -> str:
        parts = [self.category, self.subcategory or "", f"{self.thickness:g}mk x {self.width:g}mm"]
        if self.series_number:
            parts.append(self.series_number)
        return " ".join(p for p in parts if p)


class _PaintColumns(StockItemMixin):
    PRICE_FIELD = "price_per_kg"

    color_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    color_hex: Mapped[str] = mapped_column(String(16), nullable=False, default="#000000")
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    series_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    marka: Mapped[str | None] = mapped_column(String(128), nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def label(self) -> str:
        return " ".join(p for p in (self.color_name, self.marka or "", self.series_number or "") if p)


class Paint(_PaintColumns, Base):
    __tablename__ = "inventory_paints"
    KIND = "paint"


class LiquidPaint(_PaintColumns, Base):
    __tablename__ = "inventory_liquid_paints"
    KIND = "liquid_paint"


class Glue(StockItemMixin, Base):
    """Glue is counted in barrels; weights are per barrel."""

    __tablename__ = "inventory_glues"
    KIND = "glue"
    UNIT = "barrel"

    received_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    number_identifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    net_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    gross_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    @property
    def total_net_weight(self) -> float:
        return round((self.quantity or 0) * (self.net_weight or 0), 3)

    @property
    def total_gross_weight(self) -> float:
        return round((self.quantity or 0) * (self.gross_weight or 0), 3)

    @property
    def label(self) -> str:
        return " ".join(p for p in (self.name, self.number_identifier or "") if p)


class Solvent(StockItemMixin, Base):
    __tablename__ = "inventory_solvents"
    KIND = "solvent"
    UNIT = "liter"
    PRICE_FIELD = "price_per_liter"

    type: Mapped[str] = mapped_column(String(32), nullable=False, default="eaf")
    price_per_liter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    series_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def label(self) -> str:
        return " ".join(p for p in (self.type.upper(), self.series_number or "") if p)


class Cylinder(StockItemMixin, Base):
    __tablename__ = "inventory_cylinders"
    KIND = "cylinder"
    UNIT = "piece"

    origin: Mapped[str] = mapped_column(String(16), nullable=False, default="china")
    series_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    length: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    diameter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    usage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    usage_limit: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    @property
    def label(self) -> str:
        return " ".join(p for p in (self.origin, self.series_number or "", f"{self.length:g}x{self.diameter:g}") if p)


class SparePart(StockItemMixin, Base):
    __tablename__ = "inventory_spare_parts"
    KIND = "spare_part"
    UNIT = "piece"

    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    @property
    def label(self) -> str:
        return self.title


class Waste(StockItemMixin, Base):
    __tablename__ = "inventory_waste"
    KIND = "waste"
    PRICE_FIELD = "price_per_kg"

    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    @property
    def label(self) -> str:
        return self.title


class FinishedProduct(StockItemMixin, Base):
    __tablename__ = "inventory_finished_products"
    __table_args__ = (
        Index("idx_finished_products_location", "location"),
    )
    KIND = "finished_product"
    PRICE_FIELD = "price_per_kg"

    location: Mapped[str] = mapped_column(String(16), nullable=False, default="tashkent")
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    total_meter: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)

    @property
    def label(self) -> str:
        return self.title


class StockTransaction(Base):
    """One movement on a warehouse item's ledger."""

    __tablename__ = "stock_transactions"
    __table_args__ = (
        Index("idx_stock_transactions_item", "kind", "item_id"),
        Index("idx_stock_transactions_date", "date"),
        Index("idx_stock_transactions_plan", "plan_id"),
        Index("idx_stock_transactions_mixture", "mixture_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)  # in | out
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    machine_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    machine_id: Mapped[int | None] = mapped_column(ForeignKey("machines.id", ondelete="SET NULL"), nullable=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    plan_id: Mapped[int | None] = mapped_column(ForeignKey("production_plans.id", ondelete="SET NULL"), nullable=True)
    mixture_id: Mapped[int | None] = mapped_column(ForeignKey("mixtures.id", ondelete="CASCADE"), nullable=True)

    # Set on production usage rows so order costs survive later price edits.
    unit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
