"""
Pydantic schemas for API requests
"""

from typing import Literal
from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    mobile_number: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    pin: str = Field(..., description="Numeric PIN")
    role: Literal["customer", "agent"] = "customer"


class LoginRequest(BaseModel):
    identifier: str = Field(..., description="Mobile number or email")
    pin: str


class TransferRequest(BaseModel):
    recipient: str = Field(..., description="Recipient mobile number or email")
    amount: str = Field(..., description="Decimal amount as string")
    pin: str


class CashRequestCreate(BaseModel):
    agent: str = Field(..., description="Agent mobile number or email")
    amount: str = Field(..., description="Decimal amount as string")
    type: Literal["cash-in", "cash-out"]
    pin: str


class ResolveRequest(BaseModel):
    decision: Literal["approve", "reject"]
