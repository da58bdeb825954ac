# farmgate/guard.py
"""
One guard controller, three roles.

    DASHBOARD  wraps protected dashboard content
    PAYMENT    wraps the payment form (inverse role)
    GENERAL    other subscription-sensitive pages

Lifecycle:
    UNRESOLVED  no identity yet (or signed out)
    LOADING     identity known, feed open, no snapshot yet
    DECIDED     at least one snapshot evaluated; keeps re-deciding on every
                snapshot until unmount or identity change

Every feed callback carries the epoch it was opened under. Closing the feed
bumps the epoch first, so a delivery that races a teardown or an identity
switch is dropped instead of navigating for the wrong identity.

A running trial is re-evaluated when its window closes (or every
recheck_seconds, whichever comes first) even if the record never changes.
The timer lives on the running event loop and is cancelled with the feed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from farmgate.access_policy import (
    AccessDecision,
    AccountSnapshot,
    GuardRole,
    evaluate,
    is_trial_expired,
    surface_decision,
    trial_expires_at,
)
from farmgate.errors import FeedUnavailable, IdentityLost
from farmgate.identity import Identity, IdentityState
from farmgate.record_feed import AccountRecordFeed, Subscription

logger = logging.getLogger(__name__)


class GuardState(str, enum.Enum):
    UNRESOLVED = "unresolved"
    LOADING = "loading"
    DECIDED = "decided"


class RenderState(str, enum.Enum):
    CHILDREN = "children"
    NOTHING = "nothing"
    LOADING = "loading"


class Route(str, enum.Enum):
    DASHBOARD = "dashboard"
    PAYMENT = "payment"
    LOGIN = "login"


class Navigator(Protocol):
    def navigate(self, route: Route) -> None: ...


class ErrorReporter(Protocol):
    def report_error(self, context: str, error: BaseException) -> None: ...


class LoggingErrorReporter:
    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def report_error(self, context: str, error: BaseException) -> None:
        self.log.error("%s: %s", context, error, exc_info=error)


@dataclass(frozen=True)
class GuardView:
    role: GuardRole
    state: GuardState
    decision: Optional[AccessDecision]
    render: RenderState
    navigate: Optional[Route] = None
    identity_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "role": self.role.value,
            "state": self.state.value,
            "decision": self.decision.value if self.decision else None,
            "render": self.render.value,
            "navigate": self.navigate.value if self.navigate else None,
            "identity_id": self.identity_id,
        }


Outcome = Tuple[RenderState, Optional[Route]]

_LOADING: Outcome = (RenderState.LOADING, None)

_OUTCOMES: Dict[GuardRole, Dict[AccessDecision, Outcome]] = {
    GuardRole.DASHBOARD: {
        AccessDecision.GRANT: (RenderState.CHILDREN, None),
        AccessDecision.REDIRECT_TO_PAYMENT: (RenderState.NOTHING, Route.PAYMENT),
        AccessDecision.INDETERMINATE: _LOADING,
    },
    GuardRole.PAYMENT: {
        AccessDecision.REDIRECT_TO_DASHBOARD: (RenderState.NOTHING, Route.DASHBOARD),
        AccessDecision.REDIRECT_TO_PAYMENT: (RenderState.CHILDREN, None),
        AccessDecision.INDETERMINATE: _LOADING,
    },
    GuardRole.GENERAL: {
        AccessDecision.GRANT: (RenderState.CHILDREN, None),
        AccessDecision.REDIRECT_TO_PAYMENT: (RenderState.NOTHING, Route.PAYMENT),
        AccessDecision.INDETERMINATE: _LOADING,
    },
}

# Never-provisioned identity on a general page goes home rather than loading forever.
_GENERAL_ABSENT: Outcome = (RenderState.NOTHING, Route.DASHBOARD)


def outcome_for(role: GuardRole, decision: AccessDecision, record_absent: bool = False) -> Outcome:
    if role is GuardRole.GENERAL and decision is AccessDecision.INDETERMINATE and record_absent:
        return _GENERAL_ABSENT
    return _OUTCOMES[role].get(decision, _LOADING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GuardController:
    def __init__(
        self,
        role: GuardRole,
        identity_state: IdentityState,
        feed: AccountRecordFeed,
        navigator: Navigator,
        error_reporter: Optional[ErrorReporter] = None,
        clock: Callable[[], datetime] = _utcnow,
        recheck_seconds: Optional[float] = None,
    ):
        self.role = role
        self.identity_state = identity_state
        self.feed = feed
        self.navigator = navigator
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.clock = clock
        self.recheck_seconds = recheck_seconds

        self._epoch = 0
        self._sub: Optional[Subscription] = None
        # last delivered snapshot; only valid while _has_snapshot
        self._snapshot: Optional[AccountSnapshot] = None
        self._has_snapshot = False
        self._recheck_handle: Optional[asyncio.TimerHandle] = None
        self._identity_id: Optional[str] = None
        self._state = GuardState.UNRESOLVED
        self._decision: Optional[AccessDecision] = None
        self._record_absent = False
        self._last_route: Optional[Route] = None
        self._remove_identity_listener: Optional[Callable[[], None]] = None
        self._listeners: List[Callable[[GuardView], None]] = []
        self._mounted = False

    # -------------------------------------------------
    # read side
    # -------------------------------------------------
    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def decision(self) -> Optional[AccessDecision]:
        return self._decision

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def identity_id(self) -> Optional[str]:
        return self._identity_id

    @property
    def render(self) -> RenderState:
        if self._state is GuardState.UNRESOLVED:
            return RenderState.LOADING if self.identity_state.is_pending else RenderState.NOTHING
        if self._state is GuardState.LOADING or self._decision is None:
            return RenderState.LOADING
        return outcome_for(self.role, self._decision, self._record_absent)[0]

    def view(self, navigate: Optional[Route] = None) -> GuardView:
        return GuardView(
            role=self.role,
            state=self._state,
            decision=self._decision,
            render=self.render,
            navigate=navigate,
            identity_id=self._identity_id,
        )

    def on_change(self, cb: Callable[[GuardView], None]) -> Callable[[], None]:
        self._listeners.append(cb)

        def remove() -> None:
            if cb in self._listeners:
                self._listeners.remove(cb)

        return remove

    # -------------------------------------------------
    # lifecycle
    # -------------------------------------------------
    def mount(self) -> "GuardController":
        if self._mounted:
            return self
        self._mounted = True
        self._remove_identity_listener = self.identity_state.add_listener(self._on_identity)
        if not self.identity_state.is_pending:
            self._on_identity(self.identity_state.current_identity())
        return self

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        if self._remove_identity_listener is not None:
            self._remove_identity_listener()
            self._remove_identity_listener = None
        self._close_feed()
        self._identity_id = None
        self._state = GuardState.UNRESOLVED
        self._decision = None
        self._record_absent = False
        self._last_route = None
        self._listeners.clear()

    def __enter__(self) -> "GuardController":
        return self.mount()

    def __exit__(self, *exc) -> None:
        self.unmount()

    def _close_feed(self) -> None:
        # bump first: anything already in flight for the old feed is now stale
        self._epoch += 1
        self._cancel_recheck()
        self._snapshot = None
        self._has_snapshot = False
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.unsubscribe()

    def _cancel_recheck(self) -> None:
        handle, self._recheck_handle = self._recheck_handle, None
        if handle is not None:
            handle.cancel()

    # -------------------------------------------------
    # event handlers
    # -------------------------------------------------
    def _on_identity(self, identity: Optional[Identity]) -> None:
        new_id = identity.uid if identity is not None else None
        if new_id is not None and new_id == self._identity_id and self._sub is not None:
            return

        previous = self._identity_id
        self._close_feed()
        self._identity_id = new_id
        self._decision = None
        self._record_absent = False
        self._last_route = None

        if identity is None:
            self._state = GuardState.UNRESOLVED
            if previous is not None:
                logger.info("%s guard: %s", self.role.value, IdentityLost(f"identity {previous} signed out"))
            self._navigate_and_publish(Route.LOGIN)
            return

        self._state = GuardState.LOADING
        self._publish()

        epoch = self._epoch
        sub = self.feed.subscribe(
            identity.uid,
            lambda snapshot: self._on_snapshot(epoch, snapshot),
            lambda error: self._on_feed_error(epoch, error),
        )
        # a synchronous first delivery may have switched identity already
        if epoch == self._epoch:
            self._sub = sub
        else:
            sub.unsubscribe()

    def _on_snapshot(self, epoch: int, snapshot: Optional[AccountSnapshot]) -> None:
        if epoch != self._epoch:
            logger.debug("%s guard: dropped stale snapshot (epoch %s != %s)", self.role.value, epoch, self._epoch)
            return
        self._snapshot = snapshot
        self._has_snapshot = True
        self._record_absent = snapshot is None
        decision = self._evaluate()
        logger.debug("%s guard: %s -> %s", self.role.value, self._identity_id, decision.value)
        self._apply(decision)
        if epoch == self._epoch:
            self._schedule_recheck(epoch)

    def _on_feed_error(self, epoch: int, error: FeedUnavailable) -> None:
        if epoch != self._epoch:
            return
        self.error_reporter.report_error(
            f"{self.role.value} guard: account feed for {self._identity_id}", error
        )
        # fail closed: keep loading, the feed retries on its own
        self._cancel_recheck()
        self._snapshot = None
        self._has_snapshot = False
        self._record_absent = False
        self._apply(AccessDecision.INDETERMINATE)

    def _evaluate(self) -> AccessDecision:
        return surface_decision(evaluate(self._snapshot, self.clock(), self.role), self.role)

    # -------------------------------------------------
    # time-based re-evaluation
    # -------------------------------------------------
    def recheck(self) -> None:
        """
        Re-evaluates the last snapshot against the clock. A trial that ran out
        while the record stayed unchanged moves to the payment redirect here.
        """
        if not self._has_snapshot:
            return
        decision = self._evaluate()
        if decision is not self._decision:
            logger.debug("%s guard: %s -> %s (clock)", self.role.value, self._identity_id, decision.value)
            self._apply(decision)
        self._schedule_recheck(self._epoch)

    def _schedule_recheck(self, epoch: int) -> None:
        self._cancel_recheck()
        snapshot = self._snapshot
        expires = trial_expires_at(snapshot)
        if expires is None:
            return
        now = self.clock()
        if is_trial_expired(snapshot, now):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (synchronous embedding): callers drive recheck() themselves
            return

        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        # expiry is strict (now > end), so land just past the boundary
        delay = max(0.0, (expires - now).total_seconds()) + 0.001
        if self.recheck_seconds is not None:
            delay = min(delay, self.recheck_seconds)
        self._recheck_handle = loop.call_later(delay, self._on_recheck, epoch)

    def _on_recheck(self, epoch: int) -> None:
        if epoch != self._epoch:
            return
        self._recheck_handle = None
        self.recheck()

    def _apply(self, decision: AccessDecision) -> None:
        self._state = GuardState.DECIDED
        self._decision = decision
        _, route = outcome_for(self.role, decision, self._record_absent)
        self._navigate_and_publish(route)

    def _navigate_and_publish(self, route: Optional[Route]) -> None:
        navigated: Optional[Route] = None
        if route is None:
            self._last_route = None
        elif route != self._last_route:
            self._last_route = route
            navigated = route
            self.navigator.navigate(route)
        self._publish(navigated)

    def _publish(self, navigated: Optional[Route] = None) -> None:
        if not self._listeners:
            return
        view = self.view(navigated)
        for cb in list(self._listeners):
            cb(view)


# -------------------------------------------------
# Role configurations
# -------------------------------------------------
def dashboard_guard(identity_state: IdentityState, feed: AccountRecordFeed, navigator: Navigator, **kw) -> GuardController:
    return GuardController(GuardRole.DASHBOARD, identity_state, feed, navigator, **kw)


def payment_surface_guard(identity_state: IdentityState, feed: AccountRecordFeed, navigator: Navigator, **kw) -> GuardController:
    return GuardController(GuardRole.PAYMENT, identity_state, feed, navigator, **kw)


def general_subscription_guard(identity_state: IdentityState, feed: AccountRecordFeed, navigator: Navigator, **kw) -> GuardController:
    return GuardController(GuardRole.GENERAL, identity_state, feed, navigator, **kw)
