# farmgate/access_guard.py
"""
Request-time versions of the three guards.

Same evaluator and the same role outcome table as the live GuardController,
applied to a single read of the account record. A route that would render
children passes; anything else becomes an HTTPException whose detail code the
authz error handler turns into a redirect for browsers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from farmgate import auth, models
from farmgate.access_policy import (
    AccessDecision,
    AccountSnapshot,
    GuardRole,
    evaluate,
    surface_decision,
    trial_info,
)
from farmgate.database import get_db
from farmgate.errors import MalformedRecord
from farmgate.guard import RenderState, Route, outcome_for
from farmgate.identity import Identity
from farmgate.record_feed import snapshot_from_account


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def read_snapshot(account: Optional[models.Account]) -> Optional[AccountSnapshot]:
    if account is None:
        return None
    try:
        return snapshot_from_account(account)
    except MalformedRecord:
        return None


def access_status(
    db: Session,
    identity: Identity,
    role: GuardRole,
    now: Optional[datetime] = None,
) -> dict:
    now = now or _utcnow()
    account = auth.get_account(db, identity.uid)
    snapshot = read_snapshot(account)
    decision = surface_decision(evaluate(snapshot, now, role), role)
    render, route = outcome_for(role, decision, record_absent=snapshot is None)

    return {
        "ok": True,
        "role": role.value,
        "decision": decision.value,
        "render": render.value,
        "navigate": route.value if route else None,
        "trial": trial_info(snapshot, now),
        "account": _account_payload(account),
    }


def _account_payload(account: Optional[models.Account]) -> Optional[dict]:
    if account is None:
        return None
    return {
        "uid": account.uid,
        "email": account.email,
        "is_paid": bool(account.is_paid),
        "subscription_status": account.subscription_status,
        "trial_started_at": account.trial_started_at,
        "paid_at": account.paid_at,
    }


def enforce(db: Session, identity: Identity, role: GuardRole) -> dict:
    info = access_status(db, identity, role)
    render = RenderState(info["render"])
    navigate = info["navigate"]

    if render is RenderState.CHILDREN:
        return info

    if navigate == Route.PAYMENT.value:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "PAYMENT_REQUIRED",
                "message": "Your free trial has ended. Please make a payment to continue.",
                "trial": info["trial"],
            },
        )

    if navigate == Route.DASHBOARD.value:
        already = info["decision"] == AccessDecision.REDIRECT_TO_DASHBOARD.value
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "ALREADY_ENTITLED" if already else "NO_ACCOUNT",
                "message": "Subscription already active." if already else "No subscription record for this account.",
            },
        )

    # still loading: tell the client to come back, never guess
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "ACCOUNT_LOADING", "message": "Account is not available yet."},
        headers={"Retry-After": "2"},
    )


def require_dashboard_access(
    db: Session = Depends(get_db),
    identity: Identity = Depends(auth.get_current_identity),
) -> Identity:
    enforce(db, identity, GuardRole.DASHBOARD)
    return identity


def require_payment_surface(
    db: Session = Depends(get_db),
    identity: Identity = Depends(auth.get_current_identity),
) -> Identity:
    enforce(db, identity, GuardRole.PAYMENT)
    return identity


def require_subscription(
    db: Session = Depends(get_db),
    identity: Identity = Depends(auth.get_current_identity),
) -> Identity:
    enforce(db, identity, GuardRole.GENERAL)
    return identity
