from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.polimaks.models import Base

if TYPE_CHECKING:
    from app.polimaks.modules.staff.models import StaffMember


class Machine(Base):
    __tablename__ = "machines"
    __table_args__ = (
        Index("idx_machines_type", "machine_type"),
        UniqueConstraint("machine_type", "name", name="uq_machines_type_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    machine_type: Mapped[str] = mapped_column(String(32), nullable=False)  # pechat | reska | laminatsiya
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    language_code: Mapped[str] = mapped_column(String(8), nullable=False, default="uz")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    complaints: Mapped[list["MachineComplaint"]] = relationship(
        "MachineComplaint",
        back_populates="machine",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MachineComplaint.created_at.desc()",
    )
    monthly_plans: Mapped[list["MachineMonthlyPlan"]] = relationship(
        "MachineMonthlyPlan",
        back_populates="machine",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MachineMonthlyPlan.month.desc()",
    )


class MachineComplaint(Base):
    __tablename__ = "machine_complaints"
    __table_args__ = (
        Index("idx_machine_complaints_machine", "machine_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")  # open | resolved
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    machine: Mapped["Machine"] = relationship("Machine", back_populates="complaints")


class MachineMonthlyPlan(Base):
    __tablename__ = "machine_monthly_plans"
    __table_args__ = (
        UniqueConstraint("machine_id", "month", name="uq_machine_monthly_plans_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    limit_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    machine: Mapped["Machine"] = relationship("Machine", back_populates="monthly_plans")


class Brigade(Base):
    __tablename__ = "brigades"
    __table_args__ = (
        Index("idx_brigades_type", "machine_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    machine_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    leader_worker_id: Mapped[int | None] = mapped_column(ForeignKey("staff_members.id", ondelete="RESTRICT"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    leader: Mapped["StaffMember | None"] = relationship("StaffMember", foreign_keys=[leader_worker_id], lazy="selectin")
    members: Mapped[list["BrigadeMember"]] = relationship(
        "BrigadeMember",
        back_populates="brigade",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class BrigadeMember(Base):
    __tablename__ = "brigade_members"
    __table_args__ = (
        UniqueConstraint("brigade_id", "worker_id", name="uq_brigade_members_worker"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brigade_id: Mapped[int] = mapped_column(ForeignKey("brigades.id", ondelete="CASCADE"), nullable=False)
    worker_id: Mapped[int] = mapped_column(ForeignKey("staff_members.id", ondelete="RESTRICT"), nullable=False)
    position: Mapped[str | None] = mapped_column(String(128), nullable=True)

    brigade: Mapped["Brigade"] = relationship("Brigade", back_populates="members")
    worker: Mapped["StaffMember"] = relationship("StaffMember", lazy="selectin")
