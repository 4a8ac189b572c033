"""Run Registry — in-memory record of which processes are actually alive."""

from __future__ import annotations

import logging

from ..models import LiveRun

log = logging.getLogger(__name__)


class RunRegistry:
    """Maps live pids to their run/command/group-run.

    Only the event loop that handles spawn and exit mutates this, so no lock
    is taken.  Persistence can be stale after a crash; this cannot.
    """

    def __init__(self) -> None:
        self._by_pid: dict[int, LiveRun] = {}
        self._pid_by_run: dict[int, int] = {}
        self._run_by_command: dict[int, int] = {}
        self._pids_by_group_run: dict[int, set[int]] = {}

    def register_live(
        self,
        pid: int,
        command_id: int,
        run_id: int,
        group_run_id: int | None = None,
    ) -> LiveRun:
        record = LiveRun(pid=pid, command_id=command_id, run_id=run_id, group_run_id=group_run_id)
        self._by_pid[pid] = record
        self._pid_by_run[run_id] = pid
        self._run_by_command[command_id] = run_id
        if group_run_id is not None:
            self._pids_by_group_run.setdefault(group_run_id, set()).add(pid)
        return record

    def forget(self, pid: int) -> LiveRun | None:
        record = self._by_pid.pop(pid, None)
        if record is None:
            return None
        self._pid_by_run.pop(record.run_id, None)
        if self._run_by_command.get(record.command_id) == record.run_id:
            del self._run_by_command[record.command_id]
        if record.group_run_id is not None:
            pids = self._pids_by_group_run.get(record.group_run_id)
            if pids is not None:
                pids.discard(pid)
                if not pids:
                    del self._pids_by_group_run[record.group_run_id]
        return record

    def is_run_live(self, run_id: int) -> bool:
        return run_id in self._pid_by_run

    def live_run_id_for_command(self, command_id: int) -> int | None:
        return self._run_by_command.get(command_id)

    def pid_for_run(self, run_id: int) -> int | None:
        return self._pid_by_run.get(run_id)

    def get(self, pid: int) -> LiveRun | None:
        return self._by_pid.get(pid)

    def group_run_pids(self, group_run_id: int) -> set[int]:
        return set(self._pids_by_group_run.get(group_run_id, ()))

    def live_runs(self) -> list[LiveRun]:
        return list(self._by_pid.values())

    def running_run_ids(self) -> list[int]:
        return list(self._pid_by_run)

    def __len__(self) -> int:
        return len(self._by_pid)
