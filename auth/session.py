from __future__ import annotations

import logging
from typing import Callable

LOGGER = logging.getLogger("rentapi.auth")

SessionExpiredListener = Callable[[BaseException | None], None]


class SessionExpiredNotifier:
    """Fan-out for the abstract "session expired" signal.

    The client never navigates anywhere itself; the UI layer subscribes and
    decides what a lost session means for the user.
    """

    def __init__(self) -> None:
        self._listeners: list[SessionExpiredListener] = []
        self.emitted = 0

    def subscribe(self, listener: SessionExpiredListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, reason: BaseException | None = None) -> None:
        self.emitted += 1
        LOGGER.warning("Session expired: %s", reason)
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                LOGGER.exception("Session expired listener %r failed", listener)
