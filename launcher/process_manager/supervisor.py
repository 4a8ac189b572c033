"""Process Supervisor — spawns command runs, streams their output, reaps them."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from typing import Callable

from ..db import Store
from ..errors import AlreadyRunning, SpawnFailed
from ..models import KILLED_EXIT_CODE, RunStatus, StreamType
from .logs import LogFanout
from .notify import StateNotifier
from .registry import RunRegistry
from .termination import TerminationController

log = logging.getLogger(__name__)

READ_SIZE = 4096
DRAIN_TIMEOUT = 1.0  # seconds to wait for remaining output after exit

GroupExitHandler = Callable[[int, RunStatus], None]


def resolve_cwd(cwd: str | None) -> str:
    """Resolve a command's working directory, never failing.

    Empty or missing directories fall back to the supervisor's own cwd.
    """
    if not cwd or not cwd.strip():
        return os.getcwd()
    resolved = os.path.abspath(os.path.expanduser(cwd))
    if not os.path.isdir(resolved):
        log.warning("Working directory %s does not exist — using %s", resolved, os.getcwd())
        return os.getcwd()
    return resolved


class ProcessSupervisor:
    """Owns the spawn → stream → reap pipeline for every run."""

    def __init__(
        self,
        store: Store,
        registry: RunRegistry,
        logs: LogFanout,
        notifier: StateNotifier,
        termination: TerminationController,
        drain_timeout: float = DRAIN_TIMEOUT,
    ) -> None:
        self._store = store
        self._registry = registry
        self._logs = logs
        self._notifier = notifier
        self._termination = termination
        self._drain_timeout = drain_timeout
        # Held across "is it live?" and registration; spawning awaits.
        self._spawn_lock = asyncio.Lock()
        self._waiters: dict[int, asyncio.Task[None]] = {}
        self._group_exit_handler: GroupExitHandler | None = None

    def set_group_exit_handler(self, handler: GroupExitHandler) -> None:
        self._group_exit_handler = handler

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        command_id: int,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        group_run_id: int | None = None,
    ) -> tuple[int, int]:
        """Launch ``command`` as a new run. Returns ``(run_id, pid)``.

        Raises AlreadyRunning if the command has a live run and SpawnFailed
        if the OS refused to create the process.
        """
        async with self._spawn_lock:
            if self._registry.live_run_id_for_command(command_id) is not None:
                raise AlreadyRunning("Command is already running")

            resolved_cwd = resolve_cwd(cwd)
            run = self._store.create_run(command_id, group_run_id)

            try:
                process = await self._spawn(command, resolved_cwd, env)
            except (OSError, ValueError) as exc:
                self._store.mark_run_failed(run.id)
                self._notifier.notify()
                log.error("Failed to start run %d of command %d: %s", run.id, command_id, exc)
                raise SpawnFailed(f"Failed to start process: {exc}") from exc

            pid = process.pid
            self._registry.register_live(pid, command_id, run.id, group_run_id)
            self._store.set_run_pid(run.id, pid)

            readers = [
                asyncio.create_task(
                    self._read_stream(run.id, process.stdout, StreamType.STDOUT),  # type: ignore[arg-type]
                    name=f"run-{run.id}-stdout",
                ),
                asyncio.create_task(
                    self._read_stream(run.id, process.stderr, StreamType.STDERR),  # type: ignore[arg-type]
                    name=f"run-{run.id}-stderr",
                ),
            ]
            waiter = asyncio.create_task(
                self._wait_for_exit(run.id, command_id, process, readers),
                name=f"run-{run.id}-waiter",
            )
            self._waiters[run.id] = waiter
            waiter.add_done_callback(lambda _t, rid=run.id: self._waiters.pop(rid, None))

        log.info("Started run %d of command %d (pid=%d, cwd=%s)", run.id, command_id, pid, resolved_cwd)
        self._notifier.notify()
        return run.id, pid

    async def wait(self, run_id: int) -> RunStatus | None:
        """Wait until ``run_id`` has been reaped; return its stored status."""
        waiter = self._waiters.get(run_id)
        if waiter is not None:
            await asyncio.shield(waiter)
        run = self._store.get_run(run_id)
        return RunStatus(run.status) if run is not None else None

    async def stop_all(self, timeout: float = 10.0) -> None:
        """Stop every live run, escalating after ``timeout``, and reap them."""
        run_ids = self._registry.running_run_ids()
        if not run_ids:
            return
        log.info("Stopping %d live run(s)", len(run_ids))
        await asyncio.gather(
            *(self._termination.stop_run_and_wait(run_id, timeout) for run_id in run_ids)
        )
        waiters = [self._waiters[r] for r in run_ids if r in self._waiters]
        if waiters:
            await asyncio.wait(waiters, timeout=self._drain_timeout + 5.0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _spawn(
        command: str,
        cwd: str,
        env: dict[str, str] | None,
    ) -> asyncio.subprocess.Process:
        spawn_env = os.environ.copy()
        if env:
            spawn_env.update(env)

        kwargs = {}
        if os.name == "posix":
            # New session so the shell and everything it starts share a
            # process group we can signal as one.
            kwargs["preexec_fn"] = os.setsid

        return await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=spawn_env,
            **kwargs,
        )

    async def _read_stream(
        self,
        run_id: int,
        stream: asyncio.StreamReader,
        kind: StreamType,
    ) -> None:
        """Forward one pipe to the log fan-out, chunk by chunk."""
        # Incremental so a multi-byte character split across reads survives.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._logs.emit(run_id, text, kind)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._logs.emit(run_id, tail, kind)

    async def _wait_for_exit(
        self,
        run_id: int,
        command_id: int,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        returncode = await process.wait()

        # Background grandchildren can hold the pipes open; don't wait forever.
        _, pending = await asyncio.wait(readers, timeout=self._drain_timeout)
        for task in pending:
            task.cancel()

        self._on_exit(run_id, command_id, process.pid, returncode)

    def _on_exit(self, run_id: int, command_id: int, pid: int, returncode: int) -> None:
        """Reconcile a terminal state everywhere. Runs without suspending."""
        status = RunStatus.from_returncode(returncode)
        exit_code = returncode if returncode >= 0 else KILLED_EXIT_CODE

        record = self._registry.forget(pid)
        try:
            run = self._store.finish_run(run_id, exit_code, status)
            if run is not None:
                self._store.update_command_last_run(command_id, run_id, run.exit_code)
            log.info(
                "Run %d of command %d exited: %s (exit_code=%s)",
                run_id, command_id, status.value, exit_code,
            )
            if record is not None and record.group_run_id is not None and self._group_exit_handler:
                self._group_exit_handler(record.group_run_id, status)
        finally:
            self._logs.finish(run_id)
            self._notifier.notify()
