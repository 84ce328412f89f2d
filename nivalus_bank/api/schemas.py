"""
Pydantic schemas for API requests

Field aliases keep the camelCase names the web client sends.
"""

from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Auth schemas
class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SignupRequest(BaseModel):
    username: str
    email: str
    password: str
    pin: str


# User schemas
class AvatarRequest(BaseModel):
    avatar: Optional[str] = None


class TransferRequest(CamelModel):
    recipient: Optional[str] = None
    recipient_type: str = Field("username", alias="recipientType",
                                description="How to resolve recipient (email, username)")
    amount: Decimal
    memo: Optional[str] = ""
    pin: str
    transfer_method: str = Field("direct", alias="transferMethod",
                                 description="Transfer method (direct, wire, bank, card, p2p, other)")
    additional_data: Optional[Dict[str, Any]] = Field(None, alias="additionalData")


class ReceiptRequest(BaseModel):
    receipt: Optional[str] = None


# Admin schemas
class AdminCreateUserRequest(SignupRequest):
    balance: Optional[Decimal] = None
    role: str = Field("user", description="Account role (user, admin)")
    status: str = Field("active", description="Account status (active, inactive, deleted)")


class UpdateStatusRequest(BaseModel):
    status: str


class AdminTransactionRequest(CamelModel):
    user_id: int = Field(..., alias="userId")
    type: str = Field(..., description="Transaction type (deposit, withdrawal, transfer)")
    amount: Decimal
    timestamp: Optional[datetime] = None
    recipient_info: Optional[Union[Dict[str, Any], str]] = Field(None, alias="recipientInfo")
