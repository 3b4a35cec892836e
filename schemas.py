from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from amount_input import parse_amount
from ledger import MAX_PLAN_MONTHS
from models import FinanceType


def _clean_user_ids(value: list[int]) -> list[int]:
    seen: set[int] = set()
    ids: list[int] = []
    for user_id in value:
        if user_id <= 0:
            raise ValueError("User ids must be positive")
        if user_id not in seen:
            seen.add(user_id)
            ids.append(user_id)
    return ids


class FinanceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: FinanceType
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal
    description: Optional[str] = Field(default=None, max_length=1000)
    transaction_date: date
    is_recurring: bool = False
    due_date: Optional[date] = None
    payment_months: Optional[int] = Field(default=None, ge=1, le=MAX_PLAN_MONTHS)
    visible_to_user_ids: list[int] = Field(default_factory=list)

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> Decimal:
        return parse_amount(value)

    @field_validator("visible_to_user_ids")
    @classmethod
    def _dedupe_user_ids(cls, value: list[int]) -> list[int]:
        return _clean_user_ids(value)


class FinanceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[FinanceType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    transaction_date: Optional[date] = None
    is_recurring: Optional[bool] = None
    due_date: Optional[date] = None
    payment_months: Optional[int] = Field(default=None, ge=1, le=MAX_PLAN_MONTHS)
    visible_to_user_ids: Optional[list[int]] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> Optional[Decimal]:
        if value is None:
            return None
        return parse_amount(value)

    @field_validator("visible_to_user_ids")
    @classmethod
    def _dedupe_user_ids(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is None:
            return None
        return _clean_user_ids(value)
