# farmgate/context.py
from __future__ import annotations

from typing import Optional, Set

from farmgate.identity import IdentityState
from farmgate.record_feed import AccountRecordFeed, StoreRecordFeed


class AppContext:
    """
    Application-root state, created at startup and torn down at shutdown.

    Holds the shared account feed and every live IdentityState (one per
    connected client session), so shutdown can close them all.
    """

    def __init__(self, feed: Optional[AccountRecordFeed] = None):
        self.feed: AccountRecordFeed = feed or StoreRecordFeed()
        self.sessions: Set[IdentityState] = set()

    def open_session(self) -> IdentityState:
        state = IdentityState().init()
        self.sessions.add(state)
        return state

    def close_session(self, state: IdentityState) -> None:
        self.sessions.discard(state)
        state.teardown()

    def teardown(self) -> None:
        for state in list(self.sessions):
            self.close_session(state)
