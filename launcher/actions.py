"""Launcher — the boundary the API/transport layer talks to.

Every operation resolves to an ``ActionResult``: either a success payload or
an error message with an ``ErrorCode``.  Child-process failures are never
errors here; they show up as run statuses.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .config import Config
from .db import Database, Store
from .db.tables import Command, Group, GroupRun, LogChunk, Run
from .errors import ErrorCode, InvalidArgument, LauncherError, NotFound, RunMismatch
from .models import LogEvent, LogEventType, LogListener, StateObserver, StreamType, Unsubscribe
from .process_manager.groups import GroupRunCoordinator
from .process_manager.logs import LogFanout
from .process_manager.notify import StateNotifier
from .process_manager.registry import RunRegistry
from .process_manager.supervisor import ProcessSupervisor
from .process_manager.termination import Signaller, TerminationController

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ActionResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: LauncherError) -> ActionResult:
        return cls(success=False, error=exc.message, code=exc.code)

    @property
    def status(self) -> int:
        return 200 if self.success or self.code is None else self.code.status

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {
            "success": False,
            "error": self.error,
            "code": self.code.value if self.code else None,
            "status": self.status,
        }


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_id(value: Any, name: str = "id") -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"Invalid {name}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {name}") from None
    if parsed <= 0 or (isinstance(value, float) and not value.is_integer()):
        raise InvalidArgument(f"Invalid {name}")
    return parsed


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{name} must be a non-empty string")
    return value


def _check_env(env: Any) -> dict[str, str]:
    if not isinstance(env, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in env.items()
    ):
        raise InvalidArgument("env must map strings to strings")
    return dict(env)


def command_to_dict(row: Command) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "command": row.command,
        "cwd": row.cwd,
        "env": dict(row.env or {}),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "last_run_at": _iso(row.last_run_at),
        "last_exit_code": row.last_exit_code,
    }


def run_to_dict(row: Run) -> dict[str, Any]:
    return {
        "id": row.id,
        "command_id": row.command_id,
        "group_run_id": row.group_run_id,
        "pid": row.pid,
        "started_at": _iso(row.started_at),
        "finished_at": _iso(row.finished_at),
        "exit_code": row.exit_code,
        "status": row.status,
    }


def group_run_to_dict(row: GroupRun) -> dict[str, Any]:
    return {
        "id": row.id,
        "started_at": _iso(row.started_at),
        "finished_at": _iso(row.finished_at),
        "status": row.status,
    }


def chunk_to_dict(row: LogChunk) -> dict[str, Any]:
    return {
        "id": row.id,
        "run_id": row.run_id,
        "stream_type": row.stream_type,
        "content": row.content,
        "created_at": _iso(row.created_at),
    }


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class Launcher:
    """Wires store, registry, supervisor, coordinator and termination."""

    def __init__(
        self,
        db: Database,
        *,
        stop_timeout: float = 10.0,
        signaller: Signaller | None = None,
    ) -> None:
        self.db = db
        self.stop_timeout = stop_timeout
        self.store = Store(db)
        self.registry = RunRegistry()
        self.notifier = StateNotifier()
        self.logs = LogFanout(self.store)
        self.termination = TerminationController(self.registry, self.store, signaller)
        self.supervisor = ProcessSupervisor(
            self.store, self.registry, self.logs, self.notifier, self.termination,
        )
        self.groups = GroupRunCoordinator(
            self.store, self.registry, self.supervisor, self.termination, self.notifier,
        )

    @classmethod
    def from_config(cls, config: Config) -> Launcher:
        config.ensure_data_dir()
        db = Database(config.database_url)
        db.create_all()
        return cls(db, stop_timeout=config.stop_timeout)

    async def shutdown(self) -> None:
        await self.supervisor.stop_all(self.stop_timeout)
        self.db.dispose()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_run(self, command_id: Any) -> ActionResult:
        try:
            cid = _parse_id(command_id)
            command = self._get_command(cid)
            run_id, pid = await self.supervisor.start(cid, command.command, command.cwd, command.env)
        except LauncherError as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok({"run_id": run_id, "pid": pid})

    def stop_run(self, command_id: Any, run_id: Any = None) -> ActionResult:
        try:
            cid = _parse_id(command_id)
            if run_id is not None:
                rid = _parse_id(run_id, "runId")
                run = self.store.get_run(rid)
                if run is None or run.command_id != cid:
                    raise RunMismatch("Run not found or does not belong to this command")
                stopped = self.termination.stop_run(rid)
            else:
                stopped = self.termination.stop_by_command_id(cid)
            if not stopped:
                raise NotFound("No running process found for this command")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok({"ok": True})

    async def restart_run(self, command_id: Any) -> ActionResult:
        """Stop-and-wait the current run (if any), then start a new one."""
        try:
            cid = _parse_id(command_id)
            self._get_command(cid)
            await self.termination.stop_by_command_id_and_wait(cid, self.stop_timeout)
            # Re-read: the command may have been edited while we waited.
            command = self._get_command(cid)
            run_id, pid = await self.supervisor.start(cid, command.command, command.cwd, command.env)
        except LauncherError as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok({"run_id": run_id, "pid": pid})

    async def launch_group(self, group_id: Any) -> ActionResult:
        try:
            launch = await self.groups.launch(_parse_id(group_id))
        except LauncherError as exc:
            return ActionResult.fail(exc)
        if launch.error is not None:
            return ActionResult.fail(launch.error)
        return ActionResult.ok({
            "group_run_id": launch.group_run_id,
            "runs": [
                {"run_id": r.run_id, "command_id": r.command_id, "pid": r.pid}
                for r in launch.runs
            ],
        })

    def get_run(self, run_id: Any) -> ActionResult:
        try:
            run = self.store.get_run(_parse_id(run_id, "runId"))
            if run is None:
                raise NotFound.resource("Run")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        data = run_to_dict(run)
        data["live"] = self.registry.is_run_live(run.id)
        return ActionResult.ok(data)

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def subscribe_logs(self, run_id: int, listener: LogListener) -> Unsubscribe:
        return self.logs.subscribe(run_id, listener)

    def subscribe_state_change(self, observer: StateObserver) -> Unsubscribe:
        return self.notifier.subscribe(observer)

    def get_logs(self, run_id: Any, after_id: int = 0) -> ActionResult:
        try:
            rid = _parse_id(run_id, "runId")
            if self.store.get_run(rid) is None:
                raise NotFound.resource("Run")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        chunks = self.store.list_log_chunks(rid, after_id=after_id)
        return ActionResult.ok({
            "run_id": rid,
            "live": self.registry.is_run_live(rid),
            "chunks": [chunk_to_dict(c) for c in chunks],
        })

    def clear_logs(self, run_id: Any = None) -> ActionResult:
        try:
            rid = _parse_id(run_id, "runId") if run_id is not None else None
        except LauncherError as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok({"deleted": self.store.clear_log_chunks(rid)})

    async def follow_logs(self, run_id: int) -> AsyncIterator[LogEvent]:
        """Persisted history, then live chunks, then one FINISHED event.

        Subscribes before reading history, so a chunk landing in between
        may be yielded twice; nothing is lost.
        """
        live = self.registry.is_run_live(run_id)
        stream = self.logs.follow(run_id) if live else None
        for row in self.store.list_log_chunks(run_id):
            yield LogEvent(
                type=LogEventType.CHUNK,
                run_id=run_id,
                content=row.content,
                stream=StreamType(row.stream_type),
            )
        if stream is None:
            yield LogEvent(type=LogEventType.FINISHED, run_id=run_id)
            return
        async for event in stream:
            yield event

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _get_command(self, command_id: int) -> Command:
        command = self.store.get_command(command_id)
        if command is None:
            raise NotFound.resource("Command")
        return command

    def create_command(
        self,
        name: Any,
        command: Any,
        cwd: Any = "",
        env: Any = None,
    ) -> ActionResult:
        try:
            row = self.store.create_command(
                _require_text(name, "name"),
                _require_text(command, "command"),
                cwd if isinstance(cwd, str) else "",
                _check_env(env if env is not None else {}),
            )
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok(command_to_dict(row))

    def update_command(
        self,
        command_id: Any,
        *,
        name: Any = None,
        command: Any = None,
        cwd: Any = None,
        env: Any = None,
    ) -> ActionResult:
        try:
            cid = _parse_id(command_id)
            fields = {
                "name": _require_text(name, "name") if name is not None else None,
                "command": _require_text(command, "command") if command is not None else None,
                "cwd": cwd if isinstance(cwd, str) else None,
                "env": _check_env(env) if env is not None else None,
            }
            row = self.store.update_command(cid, **fields)
            if row is None:
                raise NotFound.resource("Command")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok(command_to_dict(row))

    def delete_command(self, command_id: Any) -> ActionResult:
        try:
            cid = _parse_id(command_id)
            if self.registry.live_run_id_for_command(cid) is not None:
                log.info("Deleting command %d with a live run — stopping it", cid)
                self.termination.stop_by_command_id(cid)
            if not self.store.delete_command(cid):
                raise NotFound.resource("Command")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok({"ok": True})

    def list_commands(self) -> ActionResult:
        items = []
        for row in self.store.list_commands():
            item = command_to_dict(row)
            run_id = self.registry.live_run_id_for_command(row.id)
            last_run = self.store.last_run_for_command(row.id)
            item["running"] = run_id is not None
            item["run_id"] = run_id
            item["pid"] = self.registry.pid_for_run(run_id) if run_id is not None else None
            item["last_run_id"] = last_run.id if last_run is not None else None
            items.append(item)
        return ActionResult.ok(items)

    def list_runs(self, command_id: Any, limit: int = 50) -> ActionResult:
        try:
            cid = _parse_id(command_id)
            self._get_command(cid)
        except LauncherError as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok([run_to_dict(r) for r in self.store.list_runs_for_command(cid, limit)])

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _group_to_dict(self, row: Group) -> dict[str, Any]:
        last_run = self.store.last_group_run(row.id)
        running_id = self.store.running_group_run_id(row.id)
        return {
            "id": row.id,
            "name": row.name,
            "created_at": _iso(row.created_at),
            "command_ids": self.store.list_group_command_ids(row.id),
            "last_run": group_run_to_dict(last_run) if last_run is not None else None,
            "running": running_id is not None,
            "running_group_run_id": running_id,
        }

    def create_group(self, name: Any) -> ActionResult:
        try:
            row = self.store.create_group(_require_text(name, "name"))
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok(self._group_to_dict(row))

    def update_group(self, group_id: Any, name: Any) -> ActionResult:
        try:
            row = self.store.rename_group(_parse_id(group_id), _require_text(name, "name"))
            if row is None:
                raise NotFound.resource("Group")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok(self._group_to_dict(row))

    def delete_group(self, group_id: Any) -> ActionResult:
        try:
            if not self.store.delete_group(_parse_id(group_id)):
                raise NotFound.resource("Group")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok({"ok": True})

    def set_group_commands(self, group_id: Any, command_ids: Any) -> ActionResult:
        """Replace a group's members; order in ``command_ids`` is sort order."""
        try:
            gid = _parse_id(group_id)
            if not isinstance(command_ids, (list, tuple)):
                raise InvalidArgument("commandIds must be a list")
            ordered: list[int] = []
            for value in command_ids:
                cid = _parse_id(value, "command id")
                if cid not in ordered:
                    ordered.append(cid)
            if self.store.get_group(gid) is None:
                raise NotFound.resource("Group")
            missing = set(ordered) - self.store.existing_command_ids(ordered)
            if missing:
                raise NotFound(f"Command not found: {sorted(missing)}")
            members = self.store.replace_group_commands(gid, ordered)
        except LauncherError as exc:
            return ActionResult.fail(exc)
        self.notifier.notify()
        return ActionResult.ok({"command_ids": members})

    def list_groups(self) -> ActionResult:
        return ActionResult.ok([self._group_to_dict(g) for g in self.store.list_groups()])

    def get_group_run(self, group_run_id: Any) -> ActionResult:
        try:
            row = self.store.get_group_run(_parse_id(group_run_id, "groupRunId"))
            if row is None:
                raise NotFound.resource("Group run")
        except LauncherError as exc:
            return ActionResult.fail(exc)
        data = group_run_to_dict(row)
        data["group_id"] = row.group_id
        data["runs"] = [run_to_dict(r) for r in self.store.list_runs_for_group_run(row.id)]
        return ActionResult.ok(data)
