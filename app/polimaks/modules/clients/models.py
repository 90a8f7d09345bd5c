from __future__ import annotations

import datetime as dt
from datetime import datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.polimaks.models import Base


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        Index("idx_clients_full_name", "full_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    complaints: Mapped[list["Complaint"]] = relationship(
        "Complaint",
        back_populates="client",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Complaint.created_at.desc()",
    )
    monthly_plans: Mapped[list["MonthlyPlan"]] = relationship(
        "MonthlyPlan",
        back_populates="client",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MonthlyPlan.month.desc()",
    )
    transactions: Mapped[list["ClientTransaction"]] = relationship(
        "ClientTransaction",
        back_populates="client",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def display_name(self) -> str:
        return (self.full_name or "").strip() or (self.company or "").strip()


class Complaint(Base):
    __tablename__ = "client_complaints"
    __table_args__ = (
        Index("idx_client_complaints_client", "client_id"),
        Index("idx_client_complaints_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")  # open | in_progress | resolved
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    client: Mapped["Client"] = relationship("Client", back_populates="complaints")


class MonthlyPlan(Base):
    """Agreed monthly volume (kg) for a client."""

    __tablename__ = "client_monthly_plans"
    __table_args__ = (
        UniqueConstraint("client_id", "month", name="uq_client_monthly_plans_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    limit_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    client: Mapped["Client"] = relationship("Client", back_populates="monthly_plans")


class ClientTransaction(Base):
    __tablename__ = "client_transactions"
    __table_args__ = (
        Index("idx_client_transactions_client", "client_id"),
        Index("idx_client_transactions_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="payment")  # promise | payment
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="UZS")
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    exchange_rate: Mapped[float | None] = mapped_column(Float, nullable=True)  # UZS per 1 unit of currency

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    client: Mapped["Client"] = relationship("Client", back_populates="transactions")


class CrmLead(Base):
    __tablename__ = "crm_leads"
    __table_args__ = (
        Index("idx_crm_leads_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="interested")
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class TollingRecord(Base):
    """Material brought in by a client for processing (tolling)."""

    __tablename__ = "tolling_records"
    __table_args__ = (
        Index("idx_tolling_records_client", "client_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    order: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    color: Mapped[str | None] = mapped_column(String(128), nullable=True)
    film_category: Mapped[str | None] = mapped_column(String(16), nullable=True)
    film_subcategory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    client: Mapped["Client"] = relationship("Client", lazy="selectin")


class Order(Base):
    """Order book entry."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_client", "client_id"),
        Index("idx_orders_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    quantity_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    material: Mapped[str] = mapped_column(String(16), nullable=False, default="BOPP")
    sub_material: Mapped[str | None] = mapped_column(String(64), nullable=True)
    film_thickness: Mapped[float | None] = mapped_column(Float, nullable=True)  # microns
    film_width: Mapped[float | None] = mapped_column(Float, nullable=True)  # mm
    cylinder_length: Mapped[float | None] = mapped_column(Float, nullable=True)  # mm
    cylinder_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cylinder_circumference: Mapped[float | None] = mapped_column(Float, nullable=True)  # mm
    number_of_colors: Mapped[int | None] = mapped_column(Integer, nullable=True)

    start_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    admin: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    client: Mapped["Client"] = relationship("Client", lazy="selectin")

    @property
    def label(self) -> str:
        client_name = self.client.display_name if self.client else ""
        return f"{self.order_number} - {client_name}" if client_name else self.order_number
