import datetime as dt
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, CategoryType, TransactionType

# Cents of any amount, and of long histories of them, stay inside a 64-bit INTEGER.
MAX_AMOUNT = Decimal("999999999999.99")


class SignupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    username: str = Field(..., min_length=1, max_length=80)
    password: str = Field(..., min_length=1)
    pincode: str


class LoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class PincodeLoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    pincode: str


class UserUpdateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType = AccountType.other
    balance: Decimal = Field(
        default=Decimal("0"), ge=-MAX_AMOUNT, le=MAX_AMOUNT, decimal_places=2
    )


class AccountUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[AccountType] = None
    balance: Optional[Decimal] = Field(
        default=None, ge=-MAX_AMOUNT, le=MAX_AMOUNT, decimal_places=2
    )


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    type: TransactionType
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[Union[dt.datetime, dt.date]] = None


class AssetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    value: Decimal = Field(..., ge=0, le=MAX_AMOUNT, decimal_places=2)
    type: str = Field(default="other", min_length=1, max_length=50)


class AssetUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    value: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    type: Optional[str] = Field(default=None, min_length=1, max_length=50)
