import datetime as dt
from datetime import date
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from models import IntervalUnit


InputModel = TypeVar("InputModel", bound=BaseModel)


def _normalize_currency(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    code = value.strip().upper()
    if not code:
        return None
    if len(code) != 3 or not code.isalpha():
        raise ValueError("Currency must be a three-letter ISO code")
    return code


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = None
    currency_code: Optional[str] = None

    @field_validator("currency_code")
    @classmethod
    def check_currency(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_currency(value)


class RecurringTemplateIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = None
    currency_code: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    interval_unit: IntervalUnit
    interval_count: int = Field(default=1, ge=1)
    anchor_day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    active: bool = True

    @field_validator("currency_code")
    @classmethod
    def check_currency(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_currency(value)

    @model_validator(mode="after")
    def check_dates(self) -> "RecurringTemplateIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BudgetGoalIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    limit_cents: int = Field(..., gt=0)


def load_input(
    model_cls: type[InputModel], data: Union[InputModel, dict[str, Any]]
) -> InputModel:
    """Validate ``data`` into ``model_cls``, raising our ValidationError on failure."""
    if isinstance(data, model_cls):
        return data
    try:
        if isinstance(data, BaseModel):
            return model_cls.model_validate(data.model_dump())
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(messages) from exc
