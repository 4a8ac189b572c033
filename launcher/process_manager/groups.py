"""Group Run Coordinator — all-or-nothing execution of a group's commands."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..db import Store
from ..errors import AlreadyRunning, EmptyGroup, LauncherError, NotFound, SpawnFailed
from ..models import RunStatus, SignalKind
from .notify import StateNotifier
from .registry import RunRegistry
from .supervisor import ProcessSupervisor
from .termination import TerminationController

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartedRun:
    run_id: int
    command_id: int
    pid: int


@dataclass
class GroupLaunch:
    """Outcome of a group launch.

    ``runs`` lists every member started, even when ``error`` is set: a
    collision part-way through leaves the earlier members running.
    """

    group_run_id: int
    runs: list[StartedRun] = field(default_factory=list)
    error: LauncherError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GroupRunCoordinator:
    def __init__(
        self,
        store: Store,
        registry: RunRegistry,
        supervisor: ProcessSupervisor,
        termination: TerminationController,
        notifier: StateNotifier,
    ) -> None:
        self._store = store
        self._registry = registry
        self._supervisor = supervisor
        self._termination = termination
        self._notifier = notifier
        self._launch_lock = asyncio.Lock()
        # Group runs whose member loop is still spawning.
        self._launching: set[int] = set()
        supervisor.set_group_exit_handler(self.on_member_exit)

    async def launch(self, group_id: int) -> GroupLaunch:
        """Start every member of ``group_id`` in sort order.

        Raises NotFound, AlreadyRunning or EmptyGroup before anything is
        created.  Later failures come back on ``GroupLaunch.error``.
        """
        async with self._launch_lock:
            if self._store.get_group(group_id) is None:
                raise NotFound.resource("Group")
            if self._store.running_group_run_id(group_id) is not None:
                raise AlreadyRunning("Group is already running")
            member_ids = self._store.list_group_command_ids(group_id)
            if not member_ids:
                raise EmptyGroup("Group has no commands")

            group_run_id = self._store.create_group_run(group_id).id
            log.info("Launching group %d as group run %d (%d members)", group_id, group_run_id, len(member_ids))
            self._notifier.notify()

            launch = GroupLaunch(group_run_id=group_run_id)
            self._launching.add(group_run_id)
            try:
                await self._start_members(launch, member_ids)
            finally:
                self._launching.discard(group_run_id)

            if launch.ok and self._finish_if_done(group_run_id):
                self._notifier.notify()
            return launch

    async def _start_members(self, launch: GroupLaunch, member_ids: list[int]) -> None:
        group_run_id = launch.group_run_id
        for command_id in member_ids:
            if self._store.group_run_status(group_run_id) is not RunStatus.RUNNING:
                # A member already failed and tore the group down.
                log.info("Group run %d ended during launch; not starting the rest", group_run_id)
                return

            command = self._store.get_command(command_id)
            if command is None:
                continue

            try:
                run_id, pid = await self._supervisor.start(
                    command_id, command.command, command.cwd, command.env, group_run_id,
                )
            except AlreadyRunning:
                # Members started earlier in this loop keep running.
                self._store.finish_group_run(group_run_id, RunStatus.FAILED)
                self._notifier.notify()
                log.warning(
                    "Group run %d aborted: command %d is already running (%d member(s) left running)",
                    group_run_id, command_id, len(launch.runs),
                )
                launch.error = AlreadyRunning("One or more commands are already running")
                return
            except SpawnFailed as exc:
                self._tear_down(group_run_id, RunStatus.FAILED)
                self._notifier.notify()
                launch.error = exc
                return

            launch.runs.append(StartedRun(run_id=run_id, command_id=command_id, pid=pid))

            if self._store.group_run_status(group_run_id) is not RunStatus.RUNNING:
                # Torn down while this member was spawning; it missed the kill.
                self._termination.signal_pid(pid, SignalKind.FORCE)
                self._store.mark_group_runs_killed(group_run_id)
                self._notifier.notify()
                log.warning(
                    "Group run %d ended while starting run %d (pid=%d); killed it",
                    group_run_id, run_id, pid,
                )
                return

    def on_member_exit(self, group_run_id: int, status: RunStatus) -> None:
        """Called by the supervisor after a member run has been reaped."""
        if self._store.group_run_status(group_run_id) is not RunStatus.RUNNING:
            return
        if status is RunStatus.SUCCESS:
            self._finish_if_done(group_run_id)
            return
        group_status = RunStatus.KILLED if status is RunStatus.KILLED else RunStatus.FAILED
        self._tear_down(group_run_id, group_status)

    def _tear_down(self, group_run_id: int, status: RunStatus) -> None:
        self._store.finish_group_run(group_run_id, status)
        pids = self._registry.group_run_pids(group_run_id)
        for pid in pids:
            self._termination.signal_pid(pid, SignalKind.FORCE)
        killed = self._store.mark_group_runs_killed(group_run_id)
        log.warning(
            "Group run %d %s — killed %d sibling process group(s), %d run(s) marked killed",
            group_run_id, status.value, len(pids), killed,
        )

    def _finish_if_done(self, group_run_id: int) -> bool:
        if group_run_id in self._launching:
            return False
        if self._registry.group_run_pids(group_run_id):
            return False
        if not self._store.finish_group_run(group_run_id, RunStatus.SUCCESS):
            return False
        log.info("Group run %d succeeded", group_run_id)
        return True
