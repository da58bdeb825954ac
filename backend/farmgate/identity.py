# farmgate/identity.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

VIA_PROVIDER = "provider"
VIA_PIN = "pin"

IdentityListener = Callable[[Optional["Identity"]], None]


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None
    via: str = VIA_PROVIDER
    pin_code: Optional[str] = None


class IdentityState:
    """
    "Who is signed in" for one application root (or one client session).

    Single writer (the identity provider / PIN path calls resolve), many
    readers. Starts pending until the first resolve(). Guards read it and
    listen to it but never write it.
    """

    def __init__(self):
        self._identity: Optional[Identity] = None
        self._pending = True
        self._listeners: List[IdentityListener] = []
        self._open = False

    # lifecycle
    def init(self) -> "IdentityState":
        self._open = True
        return self

    def teardown(self) -> None:
        had_identity = self._identity is not None
        self._identity = None
        self._pending = True
        listeners, self._listeners = self._listeners, []
        self._open = False
        if had_identity:
            for cb in listeners:
                cb(None)

    def __enter__(self) -> "IdentityState":
        return self.init()

    def __exit__(self, *exc) -> None:
        self.teardown()

    @property
    def is_open(self) -> bool:
        return self._open

    # readers
    def current_identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_pending(self) -> bool:
        return self._pending

    def add_listener(self, cb: IdentityListener) -> Callable[[], None]:
        self._listeners.append(cb)

        def remove() -> None:
            if cb in self._listeners:
                self._listeners.remove(cb)

        return remove

    # writer
    def resolve(self, identity: Optional[Identity]) -> None:
        if not self._open:
            raise RuntimeError("IdentityState used before init() or after teardown()")
        changed = self._pending or identity != self._identity
        self._identity = identity
        self._pending = False
        if changed:
            for cb in list(self._listeners):
                cb(identity)

    def sign_in(self, identity: Identity) -> None:
        self.resolve(identity)

    def sign_out(self) -> None:
        self.resolve(None)
