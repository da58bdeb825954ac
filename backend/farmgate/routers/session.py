# farmgate/routers/session.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from farmgate import auth, schemas
from farmgate.database import get_db
from farmgate.identity import Identity
from farmgate.provisioning import ensure_account
from farmgate.settings import auto_provision_trial

router = APIRouter(prefix="/session", tags=["session"])


@router.post("/login", response_model=schemas.TokenOut)
def session_login(payload: schemas.LoginIn, db: Session = Depends(get_db)):
    """
    Exchanges the upstream identity provider's claims for a session token.

    First sign-in provisions the account with a fresh trial (unless
    AUTO_PROVISION_TRIAL is off, in which case the record stays absent until
    the provisioning job writes it).
    """
    email = auth.normalize_email(payload.email)
    created = False
    if auto_provision_trial():
        _, created = ensure_account(db, payload.uid, email=email, name=payload.name)

    identity = Identity(uid=payload.uid, email=email)
    return schemas.TokenOut(
        access_token=auth.create_access_token(identity),
        uid=identity.uid,
        via=identity.via,
        account_created=created,
    )


@router.post("/pin")
def session_set_pin(
    payload: schemas.PinSetIn,
    db: Session = Depends(get_db),
    identity: Identity = Depends(auth.get_current_identity),
):
    auth.set_pin(db, identity.uid, payload.pin)
    return {"ok": True}


@router.post("/pin/verify", response_model=schemas.TokenOut)
def session_verify_pin(payload: schemas.PinVerifyIn, db: Session = Depends(get_db)):
    identity = auth.verify_pin(db, payload.email, payload.pin)
    return schemas.TokenOut(
        access_token=auth.create_access_token(identity),
        uid=identity.uid,
        via=identity.via,
    )
