# farmgate/record_feed.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from farmgate import models
from farmgate.access_policy import AccountSnapshot, snapshot_from_mapping
from farmgate.database import SessionLocal
from farmgate.errors import FeedUnavailable, MalformedRecord
from farmgate.settings import feed_max_backoff_seconds, feed_poll_seconds

logger = logging.getLogger(__name__)

# None means "the record does not exist (yet)"
SnapshotCallback = Callable[[Optional[AccountSnapshot]], None]
ErrorCallback = Callable[[FeedUnavailable], None]


class Subscription:
    """
    Handle for one open feed subscription.

    unsubscribe() is synchronous and idempotent. After it returns, deliver()
    and fail() are no-ops, so nothing reaches the subscriber again.
    """

    def __init__(
        self,
        identity_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.identity_id = identity_id
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._on_close: List[Callable[[], None]] = []
        self.closed = False

    def add_close_hook(self, hook: Callable[[], None]) -> None:
        self._on_close.append(hook)

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        hooks, self._on_close = self._on_close, []
        for hook in hooks:
            hook()

    def deliver(self, snapshot: Optional[AccountSnapshot]) -> bool:
        if self.closed:
            return False
        self._on_snapshot(snapshot)
        return True

    def fail(self, error: FeedUnavailable) -> bool:
        if self.closed:
            return False
        if self._on_error is not None:
            self._on_error(error)
        return True


class AccountRecordFeed(Protocol):
    def subscribe(
        self,
        identity_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription: ...


def _to_snapshot(identity_id: str, data: Optional[Mapping[str, Any]]) -> Optional[AccountSnapshot]:
    if data is None:
        return None
    try:
        return snapshot_from_mapping(data)
    except MalformedRecord as e:
        logger.warning("Malformed account record for %s treated as absent: %s", identity_id, e)
        return None


# -------------------------------------------------
# In-memory feed (push on write)
# -------------------------------------------------
class InMemoryRecordFeed:
    """
    Push-style feed over a dict of raw records.

    Writes through put()/delete() fan out synchronously to every open
    subscription for that identity, in write order. With auto_emit=False the
    initial snapshot is held back until emit() is called, which lets callers
    observe the "no data yet" window.
    """

    def __init__(self, records: Optional[Dict[str, Mapping[str, Any]]] = None, auto_emit: bool = True):
        self._records: Dict[str, Mapping[str, Any]] = dict(records or {})
        self._subs: Dict[str, List[Subscription]] = {}
        self.auto_emit = auto_emit

    def subscribe(
        self,
        identity_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        sub = Subscription(identity_id, on_snapshot, on_error)
        self._subs.setdefault(identity_id, []).append(sub)
        sub.add_close_hook(lambda: self._drop(sub))
        if self.auto_emit:
            sub.deliver(_to_snapshot(identity_id, self._records.get(identity_id)))
        return sub

    def _drop(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.identity_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.identity_id, None)

    def subscriber_count(self, identity_id: str) -> int:
        return len(self._subs.get(identity_id, []))

    def get(self, identity_id: str) -> Optional[Mapping[str, Any]]:
        return self._records.get(identity_id)

    def put(self, identity_id: str, data: Mapping[str, Any]) -> None:
        self._records[identity_id] = dict(data)
        self.emit(identity_id)

    def delete(self, identity_id: str) -> None:
        self._records.pop(identity_id, None)
        self.emit(identity_id)

    def emit(self, identity_id: str) -> None:
        snapshot = _to_snapshot(identity_id, self._records.get(identity_id))
        for sub in list(self._subs.get(identity_id, [])):
            sub.deliver(snapshot)

    def fail(self, identity_id: str, cause: Optional[BaseException] = None) -> None:
        for sub in list(self._subs.get(identity_id, [])):
            sub.fail(FeedUnavailable(identity_id, cause))


# -------------------------------------------------
# Store-backed feed (SQLAlchemy, polled)
# -------------------------------------------------
def snapshot_from_account(account: models.Account) -> AccountSnapshot:
    return snapshot_from_mapping(
        {
            "is_paid": bool(account.is_paid),
            "subscription_status": account.subscription_status,
            "trial_started_at": account.trial_started_at,
            "paid_at": account.paid_at,
        }
    )


_UNSET = object()


class StoreRecordFeed:
    """
    Real-time feed over the accounts table.

    One asyncio task per subscription re-reads the row every poll interval and
    emits when the snapshot changed. The first read always emits, and so does
    the first good read after a failure. A failed read is reported to the
    subscriber as FeedUnavailable and retried with capped exponential
    backoff; the subscription stays open.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        poll_seconds: Optional[float] = None,
        max_backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.poll_seconds = poll_seconds if poll_seconds is not None else feed_poll_seconds()
        self.max_backoff_seconds = (
            max_backoff_seconds if max_backoff_seconds is not None else feed_max_backoff_seconds()
        )

    def read(self, identity_id: str) -> Optional[AccountSnapshot]:
        db = self.session_factory()
        try:
            account = db.scalar(select(models.Account).where(models.Account.uid == identity_id))
            if account is None:
                return None
            return snapshot_from_account(account)
        finally:
            db.close()

    def subscribe(
        self,
        identity_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        sub = Subscription(identity_id, on_snapshot, on_error)
        task = asyncio.get_running_loop().create_task(self._run(sub))
        sub.add_close_hook(task.cancel)
        return sub

    async def _run(self, sub: Subscription) -> None:
        last: Any = _UNSET
        delay = self.poll_seconds

        while not sub.closed:
            try:
                snapshot = await asyncio.to_thread(self.read, sub.identity_id)
            except MalformedRecord as e:
                logger.warning("Malformed account record for %s treated as absent: %s", sub.identity_id, e)
                snapshot = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                sub.fail(FeedUnavailable(sub.identity_id, e))
                # the subscriber now holds "unavailable"; the next good read must emit
                last = _UNSET
                delay = min(delay * 2, self.max_backoff_seconds)
                await asyncio.sleep(delay)
                continue

            delay = self.poll_seconds
            if last is _UNSET or snapshot != last:
                last = snapshot
                sub.deliver(snapshot)

            await asyncio.sleep(self.poll_seconds)
