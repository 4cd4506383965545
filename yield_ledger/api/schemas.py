"""
Pydantic schemas for API requests
"""

from datetime import date
from enum import Enum
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field

from ..exceptions import ValidationError


E = TypeVar("E", bound=Enum)


def parse_enum(enum_type: Type[E], value: str, field_name: str) -> E:
    """Look up an enum by value, failing with the engine's ValidationError"""
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Invalid {field_name} '{value}', expected one of: {allowed}")


# Account schemas
class OpenAccountRequest(BaseModel):
    owner_id: int
    principal_amount: str = Field(..., description="Decimal amount as string")
    monthly_rate: Optional[str] = None  # Decimal as string, defaults to configured rate
    account_number: Optional[str] = None


class PostTransactionRequest(BaseModel):
    amount: str = Field(..., description="Signed decimal amount as string")
    transaction_type: str = Field(..., description="loan, monthly_payment, bonus, withdrawal, "
                                                   "yield_deposit, yield_payment, "
                                                   "adjustment_increase, adjustment_decrease")
    description: str
    effective_date: date
    bonus_percentage: Optional[str] = None
    reference_id: Optional[str] = None


# Yield deposit schemas
class CreateDepositRequest(BaseModel):
    owner_id: int
    principal_amount: str = Field(..., description="Decimal amount as string")
    annual_yield_rate: Optional[str] = None  # Decimal as string, defaults to configured rate
    start_date: date
    notes: Optional[str] = None
    created_by: Optional[int] = None


class UpdateDepositRequest(BaseModel):
    status: Optional[str] = Field(None, description="active, inactive or completed")
    notes: Optional[str] = None
    principal_amount: Optional[str] = None
    updated_by: Optional[int] = None


class ProcessPayoutRequest(BaseModel):
    payout_date: date
    processed_by: Optional[int] = None
    notes: Optional[str] = None


class RunPayoutsRequest(BaseModel):
    as_of: Optional[date] = None  # defaults to today
    dry_run: bool = False
    processed_by: Optional[int] = None


# Withdrawal schemas
class CreateWithdrawalRequest(BaseModel):
    owner_id: int
    amount: str = Field(..., description="Decimal amount as string")
    reason: str
    urgency: str = Field("normal", description="low, normal, high or urgent")
    notes: Optional[str] = None


class ReviewWithdrawalRequest(BaseModel):
    actor_id: int
    admin_notes: Optional[str] = None
