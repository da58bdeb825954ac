# farmgate/access_policy.py
"""
Central access decision for the subscription/trial gate.

Rules (first match wins):
- No account record yet -> INDETERMINATE (never grant on missing data)
- Paid + status "active" -> GRANT
- Paid but not "active" -> role dependent (see _paid_is_entitled)
- Trial inside TRIAL_WINDOW -> GRANT
- Everything else (expired trial, pending payment, unset) -> REDIRECT_TO_PAYMENT

evaluate() is pure: same (record, now, role) in, same decision out.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from farmgate.errors import MalformedRecord

# Fixed for every account. Candidate configuration point if plans ever differ.
TRIAL_WINDOW = timedelta(days=2)

STATUS_TRIAL = "trial"
STATUS_ACTIVE = "active"
STATUS_PENDING_PAYMENT = "pending_payment"


class AccessDecision(str, enum.Enum):
    GRANT = "grant"
    REDIRECT_TO_PAYMENT = "redirect_to_payment"
    REDIRECT_TO_DASHBOARD = "redirect_to_dashboard"
    INDETERMINATE = "indeterminate"


class GuardRole(str, enum.Enum):
    DASHBOARD = "dashboard"
    PAYMENT = "payment"
    GENERAL = "general"


@dataclass(frozen=True)
class AccountSnapshot:
    is_paid: bool = False
    subscription_status: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def in_trial(self) -> bool:
        return self.subscription_status == STATUS_TRIAL


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_ts(value: Any, field: str) -> Optional[datetime]:
    """
    Accepts datetime, ISO string, epoch seconds, or a {"seconds": n} timestamp
    object. Returns a naive datetime in UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc_naive(value)
    if isinstance(value, Mapping) and "seconds" in value:
        value = value["seconds"]
    if isinstance(value, bool):
        raise MalformedRecord(f"{field}: expected a timestamp, got bool")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        try:
            return _as_utc_naive(datetime.fromisoformat(value.strip()))
        except ValueError as e:
            raise MalformedRecord(f"{field}: unparseable timestamp {value!r}") from e
    raise MalformedRecord(f"{field}: unsupported timestamp type {type(value).__name__}")


def _pick(data: Mapping[str, Any], *names: str) -> tuple[bool, Any]:
    for n in names:
        if n in data:
            return True, data[n]
    return False, None


def normalize_status(value: Any) -> Optional[str]:
    s = (str(value) if value is not None else "").strip().lower()
    return s or None


def snapshot_from_mapping(data: Mapping[str, Any]) -> AccountSnapshot:
    """
    Builds a snapshot from raw record data (camelCase or snake_case keys).

    Raises MalformedRecord when the paid flag or status field is missing, or a
    field has the wrong type. Callers treat that as "no record".
    """
    if not isinstance(data, Mapping):
        raise MalformedRecord(f"record must be a mapping, got {type(data).__name__}")

    found, is_paid = _pick(data, "is_paid", "isPaid")
    if not found:
        raise MalformedRecord("missing is_paid")
    if not isinstance(is_paid, bool):
        if is_paid in (0, 1):
            is_paid = bool(is_paid)
        else:
            raise MalformedRecord(f"is_paid: expected bool, got {is_paid!r}")

    found, status = _pick(data, "subscription_status", "subscriptionStatus")
    if not found:
        raise MalformedRecord("missing subscription_status")
    if status is not None and not isinstance(status, str):
        raise MalformedRecord(f"subscription_status: expected str, got {status!r}")

    _, trial_raw = _pick(data, "trial_started_at", "trialStartedAt")
    _, paid_raw = _pick(data, "paid_at", "paidAt")

    return AccountSnapshot(
        is_paid=is_paid,
        subscription_status=normalize_status(status),
        trial_started_at=_parse_ts(trial_raw, "trial_started_at"),
        paid_at=_parse_ts(paid_raw, "paid_at"),
    )


def is_trial_expired(record: AccountSnapshot, now: datetime) -> bool:
    if not record.in_trial or record.trial_started_at is None:
        return False
    return (_as_utc_naive(now) - _as_utc_naive(record.trial_started_at)) > TRIAL_WINDOW


def trial_expires_at(record: Optional[AccountSnapshot]) -> Optional[datetime]:
    """End of the trial window (naive UTC), or None when no trial is running."""
    if record is None or not record.in_trial or record.trial_started_at is None:
        return None
    return _as_utc_naive(record.trial_started_at) + TRIAL_WINDOW


def _paid_is_entitled(record: AccountSnapshot, role: GuardRole) -> bool:
    # Dashboard and payment surface are mirror images and must agree, or a
    # paid-but-pending account would bounce between them.
    if record.subscription_status == STATUS_ACTIVE:
        return True
    if role is GuardRole.GENERAL:
        return record.subscription_status != STATUS_PENDING_PAYMENT
    return False


def evaluate(
    record: Optional[AccountSnapshot],
    now: datetime,
    role: GuardRole = GuardRole.DASHBOARD,
) -> AccessDecision:
    if record is None:
        return AccessDecision.INDETERMINATE

    trial_expired = is_trial_expired(record, now)

    if record.is_paid and _paid_is_entitled(record, role):
        return AccessDecision.GRANT

    if record.in_trial and not trial_expired:
        return AccessDecision.GRANT

    if trial_expired and not record.is_paid:
        return AccessDecision.REDIRECT_TO_PAYMENT

    if record.subscription_status == STATUS_PENDING_PAYMENT:
        return AccessDecision.REDIRECT_TO_PAYMENT

    return AccessDecision.REDIRECT_TO_PAYMENT


def surface_decision(decision: AccessDecision, role: GuardRole) -> AccessDecision:
    """On the payment surface an entitled account is sent back to the dashboard."""
    if role is GuardRole.PAYMENT and decision is AccessDecision.GRANT:
        return AccessDecision.REDIRECT_TO_DASHBOARD
    return decision


def trial_info(record: Optional[AccountSnapshot], now: datetime) -> dict:
    """
    Trial countdown for display. Never used to decide access.
    """
    if record is None or not record.in_trial:
        return {
            "status": "n/a",
            "started_at": None,
            "expires_at": None,
            "seconds_left": 0,
            "days_left": 0,
            "expired": False,
        }

    started = record.trial_started_at
    if started is None:
        return {
            "status": "never",
            "started_at": None,
            "expires_at": None,
            "seconds_left": 0,
            "days_left": 0,
            "expired": False,
        }

    started = _as_utc_naive(started)
    expires = trial_expires_at(record)
    expired = is_trial_expired(record, now)
    seconds_left = 0
    days_left = 0
    if not expired:
        remaining = max(0.0, (expires - _as_utc_naive(now)).total_seconds())
        seconds_left = int(remaining)
        days_left = int((remaining + 86399) // 86400)

    return {
        "status": "expired" if expired else "active",
        "started_at": started.isoformat(),
        "expires_at": expires.isoformat(),
        "seconds_left": seconds_left,
        "days_left": days_left,
        "expired": expired,
    }
