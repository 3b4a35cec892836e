from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class FinanceType(str, Enum):
    income = "income"
    expense = "expense"


class MemberStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Home(Base, TimestampMixin):
    __tablename__ = "homes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")

    members: Mapped[list["HomeMember"]] = relationship(
        "HomeMember", back_populates="home", cascade="all, delete-orphan"
    )
    finances: Mapped[list["Finance"]] = relationship(
        "Finance", back_populates="home", cascade="all, delete-orphan"
    )


class HomeMember(Base, TimestampMixin):
    __tablename__ = "home_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    home_id: Mapped[int] = mapped_column(ForeignKey("homes.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[MemberStatus] = mapped_column(
        SAEnum(MemberStatus), default=MemberStatus.pending, nullable=False
    )

    home: Mapped["Home"] = relationship("Home", back_populates="members")

    __table_args__ = (
        UniqueConstraint("home_id", "user_id", name="uq_home_member"),
    )


finance_visibility = Table(
    "finance_visibility",
    Base.metadata,
    Column(
        "finance_id",
        Integer,
        ForeignKey("finances.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("user_id", Integer, primary_key=True),
)


class Finance(Base, TimestampMixin):
    __tablename__ = "finances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    home_id: Mapped[int] = mapped_column(ForeignKey("homes.id"), nullable=False)
    type: Mapped[FinanceType] = mapped_column(SAEnum(FinanceType), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_encoded: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_months: Mapped[Optional[int]] = mapped_column(Integer)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)

    home: Mapped["Home"] = relationship("Home", back_populates="finances")

    __table_args__ = (
        Index("ix_finances_home_date", "home_id", "transaction_date"),
        Index("ix_finances_home_type", "home_id", "type"),
        CheckConstraint(
            "payment_months IS NULL OR payment_months BETWEEN 1 AND 999",
            name="ck_finances_payment_months_range",
        ),
    )
