# farmgate/provisioning.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from farmgate import models
from farmgate.access_policy import STATUS_TRIAL
from farmgate.auth import get_account, normalize_email

logger = logging.getLogger(__name__)


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_account(
    db: Session,
    uid: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[models.Account, bool]:
    """
    First sign-in creates the account record with a fresh trial:
      is_paid=False, subscription_status="trial", trial_started_at=now

    An existing record is returned untouched (subscription fields belong to
    billing once the record exists). Returns (account, created).
    """
    existing = get_account(db, uid)
    if existing:
        return existing, False

    started = now or _utcnow_naive()
    if started.tzinfo is not None:
        started = started.astimezone(timezone.utc).replace(tzinfo=None)

    account = models.Account(
        uid=uid,
        email=normalize_email(email),
        name=(name or "").strip() or None,
        is_paid=False,
        subscription_status=STATUS_TRIAL,
        trial_started_at=started,
    )
    try:
        db.add(account)
        db.commit()
        db.refresh(account)
    except Exception:
        db.rollback()
        # lost a race with a concurrent first sign-in; re-read
        existing = get_account(db, uid)
        if existing:
            return existing, False
        raise

    logger.info("Provisioned trial account for %s (started %s)", uid, started.isoformat())
    return account, True
