# farmgate/schemas.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# -----------------------------
# SESSION
# -----------------------------
class LoginIn(BaseModel):
    """Claims handed over by the upstream identity provider after sign-in."""

    uid: str = Field(min_length=1, max_length=128)
    email: Optional[EmailStr] = None
    name: Optional[str] = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"

    uid: Optional[str] = None
    via: Optional[str] = None
    account_created: bool = False


class PinSetIn(BaseModel):
    pin: str = Field(min_length=4, max_length=4)


class PinVerifyIn(BaseModel):
    email: EmailStr
    pin: str = Field(min_length=4, max_length=4)


# -----------------------------
# ACCESS
# -----------------------------
class AccountOut(BaseModel):
    uid: str
    email: Optional[str] = None
    is_paid: bool
    subscription_status: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TrialOut(BaseModel):
    status: str
    started_at: Optional[str] = None
    expires_at: Optional[str] = None
    seconds_left: int = 0
    days_left: int = 0
    expired: bool = False


class AccessStatusOut(BaseModel):
    ok: bool = True
    role: str
    decision: str
    render: str
    navigate: Optional[str] = None
    trial: TrialOut
    account: Optional[AccountOut] = None
