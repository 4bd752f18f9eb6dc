from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import (
    AccountType,
    RecurringInterval,
    TransactionStatus,
    TransactionType,
)
from periods import to_naive_utc


class IdentityClaims(BaseModel):
    sub: str = Field(..., min_length=1, max_length=191)
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=200)
    image: Optional[str] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    balance: Decimal = Field(..., max_digits=14, decimal_places=2)
    is_default: bool = False


class TransactionIn(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: datetime
    account_id: int
    category: str = Field(..., min_length=1, max_length=60)
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @field_validator("date")
    @classmethod
    def store_as_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def check_recurring_interval(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError(
                "Recurring interval is required for recurring transactions"
            )
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: Optional[str]
    image_url: Optional[str]


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    is_default: bool
    created_at: datetime
    transaction_count: Optional[int] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount: Decimal
    description: Optional[str]
    date: datetime
    category: str
    receipt_url: Optional[str]
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[datetime]
    last_processed: Optional[datetime]
    status: TransactionStatus


class AccountDetailOut(AccountOut):
    transactions: list[TransactionOut] = Field(default_factory=list)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    last_alert_sent: Optional[datetime]


class CurrentBudgetOut(BaseModel):
    budget: Optional[BudgetOut]
    current_expenses: Decimal


class ReceiptScan(BaseModel):
    amount: Decimal = Field(..., gt=0)
    date: Optional[datetime] = None
    description: Optional[str] = None
    merchant_name: Optional[str] = Field(default=None, alias="merchantName")
    category: str = "other-expense"

    model_config = ConfigDict(populate_by_name=True)


class RecurringWorkItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: int = Field(..., alias="transactionId")
    user_id: int = Field(..., alias="userId")
