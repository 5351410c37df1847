import datetime as dt
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from errors import ValidationError


UNCATEGORIZED = "Uncategorized"


class IntervalUnit(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


@dataclass(frozen=True)
class RecurrencePattern:
    """A recurrence kind plus its interval multiplier, e.g. weekly x2."""

    unit: IntervalUnit
    interval: int = 1

    def __post_init__(self) -> None:
        try:
            unit = IntervalUnit(self.unit)
        except ValueError as exc:
            raise ValidationError(f"Unknown recurrence unit: {self.unit!r}") from exc
        object.__setattr__(self, "unit", unit)
        if (
            isinstance(self.interval, bool)
            or not isinstance(self.interval, int)
            or self.interval < 1
        ):
            raise ValidationError(
                f"Recurrence interval must be a positive integer, got {self.interval!r}"
            )

    def describe(self) -> str:
        if self.interval == 1:
            return self.unit.value
        noun = {
            IntervalUnit.daily: "days",
            IntervalUnit.weekly: "weeks",
            IntervalUnit.monthly: "months",
            IntervalUnit.yearly: "years",
        }[self.unit]
        return f"every {self.interval} {noun}"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class RecordMixin:
    # Timestamps are owned by the database and never copied between records.
    _copy_skip = ("created_at", "updated_at")

    def values(self) -> dict[str, Any]:
        return {
            column.key: getattr(self, column.key)
            for column in self.__table__.columns
            if column.key not in self._copy_skip
        }

    def replace(self, **changes: Any):
        data = self.values()
        data.update(changes)
        return type(self)(**data)


class Expense(Base, RecordMixin, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))
    origin_template_id: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        UniqueConstraint(
            "origin_template_id",
            "date",
            name="uq_expense_origin_occurrence",
        ),
        Index("ix_expenses_date", "date"),
        Index("ix_expenses_category_date", "category", "date"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"Expense(id={self.id!r}, date={self.date}, category={self.category!r}, "
            f"amount_cents={self.amount_cents})"
        )


class RecurringTemplate(Base, RecordMixin, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        SAEnum(IntervalUnit), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    anchor_day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("interval_count > 0", name="ck_template_interval_positive"),
        CheckConstraint("amount_cents > 0", name="ck_template_amount_positive"),
    )

    @property
    def pattern(self) -> RecurrencePattern:
        return RecurrencePattern(self.interval_unit, self.interval_count)

    @property
    def anchor_day(self) -> int:
        return self.anchor_day_of_month or self.start_date.day

    def __repr__(self) -> str:
        return (
            f"RecurringTemplate(id={self.id!r}, title={self.title!r}, "
            f"unit={self.interval_unit}, every={self.interval_count}, "
            f"watermark={self.last_generated_date})"
        )


class BudgetGoal(Base, RecordMixin, TimestampMixin):
    __tablename__ = "budget_goals"

    category: Mapped[str] = mapped_column(String(100), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, primary_key=True)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_goal_month"),
        CheckConstraint("limit_cents > 0", name="ck_budget_goal_limit_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_budget_goal_spent_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"BudgetGoal(category={self.category!r}, {self.year}-{self.month:02d}, "
            f"limit_cents={self.limit_cents}, spent_cents={self.spent_cents})"
        )
