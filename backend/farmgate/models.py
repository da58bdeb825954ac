# farmgate/models.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class Account(Base):
    """
    One row per signed-in identity (the account record).

    Written by provisioning (first sign-in) and by the out-of-band billing
    integration. The access guards only ever read it.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Stable identifier issued by the identity provider
    uid: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)

    email: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription state
    # subscription_status values: trial / active / pending_payment (anything else = unset)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    trial_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Secondary PIN challenge (hashed, never the raw digits)
    pin_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
