from __future__ import annotations

import logging

from ..models import StateObserver, Unsubscribe

log = logging.getLogger(__name__)


class StateNotifier:
    """Payload-free "something changed" signal for runs and group runs.

    Observers re-query whatever lists they show.
    """

    def __init__(self) -> None:
        self._observers: list[StateObserver] = []

    def subscribe(self, observer: StateObserver) -> Unsubscribe:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer()
            except Exception:
                log.exception("State observer %r failed", observer)
