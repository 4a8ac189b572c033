"""Store — the narrow query interface the process manager persists through.

Every method opens its own short-lived session.  Returned rows are detached
snapshots; relationships are never touched outside a session.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select, update

from ..models import KILLED_EXIT_CODE, RunStatus, StreamType
from .database import Database
from .tables import Command, Group, GroupCommand, GroupRun, LogChunk, Run, utcnow

log = logging.getLogger(__name__)

_RUNNING = RunStatus.RUNNING.value


class Store:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_command(
        self,
        name: str,
        command: str,
        cwd: str = "",
        env: dict[str, str] | None = None,
    ) -> Command:
        row = Command(name=name, command=command, cwd=cwd, env=dict(env or {}))
        with self.db.session() as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def get_command(self, command_id: int) -> Command | None:
        with self.db.session() as session:
            return session.get(Command, command_id)

    def update_command(self, command_id: int, **fields: Any) -> Command | None:
        """Apply a partial update of name/command/cwd/env."""
        with self.db.session() as session:
            row = session.get(Command, command_id)
            if row is None:
                return None
            for key in ("name", "command", "cwd"):
                if fields.get(key) is not None:
                    setattr(row, key, fields[key])
            if fields.get("env") is not None:
                row.env = dict(fields["env"])
            row.updated_at = utcnow()
            return row

    def delete_command(self, command_id: int) -> bool:
        with self.db.session() as session:
            row = session.get(Command, command_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def list_commands(self) -> list[Command]:
        with self.db.session() as session:
            stmt = select(Command).order_by(Command.updated_at.desc(), Command.id.desc())
            return list(session.scalars(stmt))

    def update_command_last_run(self, command_id: int, run_id: int, exit_code: int | None) -> None:
        with self.db.session() as session:
            row = session.get(Command, command_id)
            run = session.get(Run, run_id)
            if row is None or run is None:
                return
            row.last_run_at = run.started_at
            row.last_exit_code = exit_code

    # ------------------------------------------------------------------
    # Groups and membership
    # ------------------------------------------------------------------

    def create_group(self, name: str) -> Group:
        row = Group(name=name)
        with self.db.session() as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def get_group(self, group_id: int) -> Group | None:
        with self.db.session() as session:
            return session.get(Group, group_id)

    def rename_group(self, group_id: int, name: str) -> Group | None:
        with self.db.session() as session:
            row = session.get(Group, group_id)
            if row is None:
                return None
            row.name = name
            return row

    def delete_group(self, group_id: int) -> bool:
        with self.db.session() as session:
            row = session.get(Group, group_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def list_groups(self) -> list[Group]:
        with self.db.session() as session:
            return list(session.scalars(select(Group).order_by(Group.name, Group.id)))

    def list_group_command_ids(self, group_id: int) -> list[int]:
        """Member command ids in stored sort order."""
        with self.db.session() as session:
            stmt = (
                select(GroupCommand.command_id)
                .where(GroupCommand.group_id == group_id)
                .order_by(GroupCommand.sort_order, GroupCommand.command_id)
            )
            return list(session.scalars(stmt))

    def replace_group_commands(self, group_id: int, command_ids: list[int]) -> list[int]:
        with self.db.session() as session:
            session.execute(delete(GroupCommand).where(GroupCommand.group_id == group_id))
            for index, command_id in enumerate(command_ids):
                session.add(
                    GroupCommand(group_id=group_id, command_id=command_id, sort_order=index)
                )
        return self.list_group_command_ids(group_id)

    def existing_command_ids(self, command_ids: list[int]) -> set[int]:
        if not command_ids:
            return set()
        with self.db.session() as session:
            stmt = select(Command.id).where(Command.id.in_(command_ids))
            return set(session.scalars(stmt))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, command_id: int, group_run_id: int | None = None) -> Run:
        row = Run(command_id=command_id, group_run_id=group_run_id, status=_RUNNING)
        with self.db.session() as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def get_run(self, run_id: int) -> Run | None:
        with self.db.session() as session:
            return session.get(Run, run_id)

    def set_run_pid(self, run_id: int, pid: int) -> None:
        with self.db.session() as session:
            session.execute(update(Run).where(Run.id == run_id).values(pid=pid))

    def mark_run_failed(self, run_id: int) -> None:
        """Spawn never happened; there is no exit code to record."""
        with self.db.session() as session:
            session.execute(
                update(Run)
                .where(Run.id == run_id)
                .values(status=RunStatus.FAILED.value, finished_at=utcnow())
            )

    def finish_run(self, run_id: int, exit_code: int, status: RunStatus) -> Run | None:
        """Record a terminal state unless one was already recorded.

        Returns the run as stored afterwards (which may carry an earlier
        terminal state, e.g. ``killed`` from a group teardown).
        """
        with self.db.session() as session:
            row = session.get(Run, run_id)
            if row is None:
                return None
            if row.status == _RUNNING:
                row.status = status.value
                row.exit_code = exit_code
                row.finished_at = utcnow()
            return row

    def running_run_id_for_command(self, command_id: int) -> int | None:
        with self.db.session() as session:
            stmt = (
                select(Run.id)
                .where(Run.command_id == command_id, Run.status == _RUNNING)
                .order_by(Run.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def running_pid_for_run(self, run_id: int) -> int | None:
        with self.db.session() as session:
            stmt = select(Run.pid).where(Run.id == run_id, Run.status == _RUNNING)
            return session.scalars(stmt).first()

    def last_run_for_command(self, command_id: int) -> Run | None:
        with self.db.session() as session:
            stmt = (
                select(Run)
                .where(Run.command_id == command_id)
                .order_by(Run.started_at.desc(), Run.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def list_runs_for_command(self, command_id: int, limit: int = 50) -> list[Run]:
        with self.db.session() as session:
            stmt = (
                select(Run)
                .where(Run.command_id == command_id)
                .order_by(Run.id.desc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def list_runs_for_group_run(self, group_run_id: int) -> list[Run]:
        with self.db.session() as session:
            stmt = select(Run).where(Run.group_run_id == group_run_id).order_by(Run.id)
            return list(session.scalars(stmt))

    def mark_group_runs_killed(self, group_run_id: int) -> int:
        with self.db.session() as session:
            result = session.execute(
                update(Run)
                .where(Run.group_run_id == group_run_id, Run.status == _RUNNING)
                .values(
                    status=RunStatus.KILLED.value,
                    exit_code=KILLED_EXIT_CODE,
                    finished_at=utcnow(),
                )
            )
            return result.rowcount or 0

    def count_running_runs(self, group_run_id: int) -> int:
        with self.db.session() as session:
            stmt = select(func.count(Run.id)).where(
                Run.group_run_id == group_run_id, Run.status == _RUNNING
            )
            return session.scalar(stmt) or 0

    # ------------------------------------------------------------------
    # Group runs
    # ------------------------------------------------------------------

    def create_group_run(self, group_id: int) -> GroupRun:
        row = GroupRun(group_id=group_id, status=_RUNNING)
        with self.db.session() as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def get_group_run(self, group_run_id: int) -> GroupRun | None:
        with self.db.session() as session:
            return session.get(GroupRun, group_run_id)

    def group_run_status(self, group_run_id: int) -> RunStatus | None:
        with self.db.session() as session:
            status = session.scalar(select(GroupRun.status).where(GroupRun.id == group_run_id))
            return RunStatus(status) if status is not None else None

    def finish_group_run(self, group_run_id: int, status: RunStatus) -> bool:
        """Move a group run to a terminal state; no-op once terminal."""
        with self.db.session() as session:
            result = session.execute(
                update(GroupRun)
                .where(GroupRun.id == group_run_id, GroupRun.status == _RUNNING)
                .values(status=status.value, finished_at=utcnow())
            )
            return bool(result.rowcount)

    def running_group_run_id(self, group_id: int) -> int | None:
        with self.db.session() as session:
            stmt = (
                select(GroupRun.id)
                .where(GroupRun.group_id == group_id, GroupRun.status == _RUNNING)
                .limit(1)
            )
            return session.scalars(stmt).first()

    def last_group_run(self, group_id: int) -> GroupRun | None:
        with self.db.session() as session:
            stmt = (
                select(GroupRun)
                .where(GroupRun.group_id == group_id)
                .order_by(GroupRun.started_at.desc(), GroupRun.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    # ------------------------------------------------------------------
    # Log chunks
    # ------------------------------------------------------------------

    def append_log_chunk(self, run_id: int, stream: StreamType, content: str) -> int:
        row = LogChunk(run_id=run_id, stream_type=stream.value, content=content)
        with self.db.session() as session:
            session.add(row)
            session.flush()
            return row.id

    def list_log_chunks(self, run_id: int, after_id: int = 0) -> list[LogChunk]:
        with self.db.session() as session:
            stmt = (
                select(LogChunk)
                .where(LogChunk.run_id == run_id, LogChunk.id > after_id)
                .order_by(LogChunk.id)
            )
            return list(session.scalars(stmt))

    def clear_log_chunks(self, run_id: int | None = None) -> int:
        with self.db.session() as session:
            stmt = delete(LogChunk)
            if run_id is not None:
                stmt = stmt.where(LogChunk.run_id == run_id)
            return session.execute(stmt).rowcount or 0
