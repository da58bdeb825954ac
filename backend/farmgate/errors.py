# farmgate/errors.py
from __future__ import annotations


class AccessControlError(Exception):
    """Base for every error the access-control core knows how to absorb."""


class FeedUnavailable(AccessControlError):
    """
    The record store could not be read (transport/read failure).

    Recovered locally: the guard keeps loading and the feed retries.
    """

    def __init__(self, identity_id: str, cause: BaseException | None = None):
        self.identity_id = identity_id
        self.cause = cause
        msg = f"account feed unavailable for {identity_id}"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class MalformedRecord(AccessControlError):
    """A snapshot is missing expected fields. Treated as an absent record."""


class IdentityLost(AccessControlError):
    """The signed-in identity disappeared mid-session."""
