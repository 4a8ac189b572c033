"""Log Fan-out — persists each output chunk once and forwards it live."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError

from ..db import Store
from ..models import LogEvent, LogEventType, LogListener, StreamType, Unsubscribe

log = logging.getLogger(__name__)


class LogFanout:
    """Multiplexes one run's output to any number of live listeners.

    History is never buffered here; late subscribers read persisted chunks
    from the store first and then subscribe.
    """

    def __init__(self, store: Store) -> None:
        self._store = store
        self._listeners: dict[int, list[LogListener]] = {}

    def subscribe(self, run_id: int, listener: LogListener) -> Unsubscribe:
        self._listeners.setdefault(run_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(run_id)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[run_id]

        return unsubscribe

    def listener_count(self, run_id: int) -> int:
        return len(self._listeners.get(run_id, ()))

    def emit(self, run_id: int, content: str, stream: StreamType) -> None:
        try:
            self._store.append_log_chunk(run_id, stream, content)
        except SQLAlchemyError:
            # Live delivery must not depend on the write succeeding.
            log.exception("Failed to persist %s chunk for run %d", stream.value, run_id)

        event = LogEvent(type=LogEventType.CHUNK, run_id=run_id, content=content, stream=stream)
        self._deliver(run_id, event)

    def finish(self, run_id: int) -> None:
        event = LogEvent(type=LogEventType.FINISHED, run_id=run_id)
        self._deliver(run_id, event)
        self._listeners.pop(run_id, None)

    def _deliver(self, run_id: int, event: LogEvent) -> None:
        for listener in list(self._listeners.get(run_id, ())):
            try:
                listener(event)
            except Exception:
                log.exception("Log listener failed for run %d", run_id)

    def follow(self, run_id: int) -> AsyncIterator[LogEvent]:
        """Subscribe now; iterate live events until the finished signal.

        The caller decides whether the run is still live; following a
        finished run would wait forever.
        """
        queue: asyncio.Queue[LogEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(run_id, queue.put_nowait)
        return self._drain(queue, unsubscribe)

    @staticmethod
    async def _drain(
        queue: asyncio.Queue[LogEvent],
        unsubscribe: Unsubscribe,
    ) -> AsyncIterator[LogEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.finished:
                    return
        finally:
            unsubscribe()
