# farmgate/auth.py
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import get_db
from .identity import VIA_PIN, VIA_PROVIDER, Identity
from .models import Account
from .settings import access_token_expire_minutes, secret_key

ALGORITHM = "HS256"

PIN_LENGTH = 4

# -------------------------------------------------------------------
# PIN hashing
# -------------------------------------------------------------------
pin_context = CryptContext(
    schemes=["bcrypt_sha256", "bcrypt"],
    deprecated="auto",
)

# Swagger will use this to send: Authorization: Bearer <token>
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/session/login", auto_error=False)


def normalize_email(email: Optional[str]) -> Optional[str]:
    e = (email or "").strip().lower()
    return e or None


def valid_pin(pin: str) -> bool:
    return bool(pin) and len(pin) == PIN_LENGTH and pin.isdigit()


def hash_pin(pin: str) -> str:
    return pin_context.hash(pin)


def verify_pin_hash(pin: str, pin_hash: Optional[str]) -> bool:
    if not pin_hash:
        return False
    return pin_context.verify(pin, pin_hash)


# -------------------------------------------------------------------
# Token create/verify
# -------------------------------------------------------------------
def create_access_token(identity: Identity, expires_minutes: Optional[int] = None) -> str:
    """
    Token claims:
      sub: identity uid
      eml: email (may be null)
      via: provider | pin
      exp: expiry datetime
    """
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or access_token_expire_minutes())
    payload = {
        "sub": identity.uid,
        "eml": identity.email,
        "via": identity.via,
        "exp": expire,
    }
    return jwt.encode(payload, secret_key(), algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, secret_key(), algorithms=[ALGORITHM])
        if not payload.get("sub"):
            raise ValueError("Token missing required claims")
        return payload
    except (JWTError, ValueError) as e:
        raise ValueError("Invalid token") from e


def identity_from_token(token: str) -> Identity:
    payload = decode_token(token)
    via = payload.get("via") if payload.get("via") in (VIA_PROVIDER, VIA_PIN) else VIA_PROVIDER
    return Identity(uid=str(payload["sub"]), email=payload.get("eml"), via=via)


def _auth_401() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "NOT_AUTHENTICATED", "message": "Not authenticated"},
        headers={"WWW-Authenticate": "Bearer"},
    )


# -------------------------------------------------------------------
# Dependencies
# -------------------------------------------------------------------
def get_current_identity(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> Identity:
    """
    Bearer header first, then ?token= (WebSocket-style clients cannot set headers).
    """
    raw = token or (request.query_params.get("token") or "").strip()
    if not raw:
        raise _auth_401()
    try:
        return identity_from_token(raw)
    except ValueError:
        raise _auth_401()


# -------------------------------------------------------------------
# PIN challenge (secondary sign-in)
# -------------------------------------------------------------------
def get_account(db: Session, uid: str) -> Optional[Account]:
    return db.scalar(select(Account).where(Account.uid == uid))


def get_account_by_email(db: Session, email: str) -> Optional[Account]:
    e = normalize_email(email)
    if not e:
        return None
    return db.scalar(select(Account).where(Account.email == e))


def set_pin(db: Session, uid: str, pin: str) -> None:
    if not valid_pin(pin):
        raise HTTPException(status_code=400, detail={"code": "INVALID_PIN", "message": "PIN must be 4 digits"})
    account = get_account(db, uid)
    if not account:
        raise HTTPException(status_code=404, detail={"code": "NO_ACCOUNT", "message": "Account not found"})
    try:
        account.pin_hash = hash_pin(pin)
        db.commit()
    except Exception:
        db.rollback()
        raise


def verify_pin(db: Session, email: str, pin: str) -> Identity:
    """
    Email + PIN -> Identity(via="pin"). Same 401 for unknown email and wrong PIN.
    """
    account = get_account_by_email(db, email)
    if not account or not valid_pin(pin) or not verify_pin_hash(pin, account.pin_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_PIN", "message": "Invalid email or PIN"},
        )
    return Identity(uid=account.uid, email=account.email, via=VIA_PIN, pin_code=pin)
