"""Termination Controller — turns stop requests into process-group signals."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Protocol

from ..db import Store
from ..models import SignalKind
from .registry import RunRegistry

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.05  # seconds between liveness checks while waiting
KILL_GRACE = 5.0  # seconds to wait for reaping after a forceful kill


class Signaller(Protocol):
    def signal(self, pid: int, kind: SignalKind) -> bool:
        """Deliver ``kind`` to the process rooted at ``pid``.

        Returns False when there is nothing left to signal.
        """
        ...


class ProcessGroupSignaller:
    """POSIX: children are spawned as session leaders, so pgid == pid."""

    def signal(self, pid: int, kind: SignalKind) -> bool:
        sig = signal.SIGKILL if kind is SignalKind.FORCE else signal.SIGTERM
        try:
            os.killpg(pid, sig)
        except OSError:
            return False
        return True


class SingleProcessSignaller:
    """Platforms without process groups: signal the tracked pid only.

    On Windows ``os.kill`` with SIGTERM is TerminateProcess, so both kinds
    end the process outright.
    """

    _SIGNALS = {
        SignalKind.GRACEFUL: signal.SIGTERM,
        SignalKind.FORCE: signal.SIGTERM,
    }

    def signal(self, pid: int, kind: SignalKind) -> bool:
        try:
            os.kill(pid, self._SIGNALS[kind])
        except OSError:
            return False
        return True


def default_signaller() -> Signaller:
    if os.name == "posix":
        return ProcessGroupSignaller()
    return SingleProcessSignaller()


class TerminationController:
    def __init__(
        self,
        registry: RunRegistry,
        store: Store,
        signaller: Signaller | None = None,
        poll_interval: float = POLL_INTERVAL,
        kill_grace: float = KILL_GRACE,
    ) -> None:
        self._registry = registry
        self._store = store
        self._signaller = signaller or default_signaller()
        self._poll_interval = poll_interval
        self._kill_grace = kill_grace
        # Runs that already received a graceful signal and are still live.
        self._stopping: set[int] = set()

    def signal_pid(self, pid: int, kind: SignalKind) -> bool:
        return self._signaller.signal(pid, kind)

    def stop_run(self, run_id: int) -> bool:
        """Send a graceful signal to the run's process group.

        Repeated calls while the run is dying do not signal again.  Falls
        back to the persisted pid when the registry has no entry but the
        store still says ``running`` (a restarted supervisor).
        """
        self._stopping.intersection_update(self._registry.running_run_ids())

        pid = self._registry.pid_for_run(run_id)
        if pid is not None:
            if run_id in self._stopping:
                return True
            if self._signaller.signal(pid, SignalKind.GRACEFUL):
                self._stopping.add(run_id)
                log.info("Sent graceful stop to run %d (pid=%d)", run_id, pid)
                return True
            return False

        pid = self._store.running_pid_for_run(run_id)
        if pid:
            log.info("Run %d not tracked; signalling persisted pid %d", run_id, pid)
            return self._signaller.signal(pid, SignalKind.GRACEFUL)
        return False

    def stop_by_command_id(self, command_id: int) -> bool:
        run_id = self._registry.live_run_id_for_command(command_id)
        if run_id is None:
            run_id = self._store.running_run_id_for_command(command_id)
        if run_id is None:
            return False
        return self.stop_run(run_id)

    async def stop_run_and_wait(self, run_id: int, timeout: float) -> bool:
        """Stop gracefully, then escalate to a forceful kill after ``timeout``.

        ``timeout`` of 0 waits forever.  Returns whether the run had a
        process to stop; resolves regardless of confirmed death.
        """
        if not self.stop_run(run_id):
            return False

        deadline = time.monotonic() + timeout if timeout > 0 else None
        forced = False
        while self._registry.is_run_live(run_id):
            if deadline is not None and time.monotonic() >= deadline:
                if forced:
                    log.warning(
                        "Run %d still tracked %.1fs after forceful kill; giving up",
                        run_id, self._kill_grace,
                    )
                    break
                pid = self._registry.pid_for_run(run_id)
                if pid is not None:
                    log.warning(
                        "Run %d did not exit within %.1fs — sending forceful kill",
                        run_id, timeout,
                    )
                    self._signaller.signal(pid, SignalKind.FORCE)
                # Reaping and the output drain still take a moment.
                forced = True
                deadline = time.monotonic() + self._kill_grace
            await asyncio.sleep(self._poll_interval)
        return True

    async def stop_by_command_id_and_wait(self, command_id: int, timeout: float) -> None:
        run_id = self._registry.live_run_id_for_command(command_id)
        if run_id is None:
            return
        await self.stop_run_and_wait(run_id, timeout)
