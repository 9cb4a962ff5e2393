"""
State container for the signed-in identity.

`IdentityStore` holds the current identity together with the `loading` and
`verified` flags. The session resolver is its only writer; the GUI and the
clinic services read snapshots or subscribe to changes.
"""
# nutriu/store.py

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from nutriu.models import Identity, Role

logger = logging.getLogger("nutriu.store")


@dataclass(frozen=True)
class IdentityState:
    identity: Optional[Identity] = None
    loading: bool = True
    verified: bool = False

    @property
    def role(self) -> Optional[Role]:
        return self.identity.role if self.identity is not None else None

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


Listener = Callable[[IdentityState], None]

_UNSET = object()


class IdentityStore:
    """Holds the identity state and notifies subscribers when it changes."""

    def __init__(self):
        self._state = IdentityState()
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> IdentityState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._state.identity

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers `listener` and returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(self, identity=_UNSET, loading=None, verified=None) -> IdentityState:
        """Replaces parts of the state and notifies subscribers if anything changed.

        Only the session resolver should call this.
        """
        with self._lock:
            previous = self._state
            self._state = IdentityState(
                identity=previous.identity if identity is _UNSET else identity,
                loading=previous.loading if loading is None else loading,
                verified=previous.verified if verified is None else verified,
            )
            current = self._state
            listeners = list(self._listeners)
        if current != previous:
            for listener in listeners:
                try:
                    listener(current)
                except Exception:
                    logger.exception("Identity listener %r failed", listener)
        return current
