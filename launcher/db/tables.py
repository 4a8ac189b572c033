"""ORM tables for commands, groups, runs and log chunks."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base

_STATUS_CHECK = "status IN ('running', 'success', 'failed', 'killed')"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Command(Base):
    __tablename__ = "commands"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    command = Column(Text, nullable=False)
    cwd = Column(String, nullable=False, default="")
    env = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Denormalized from the most recent finished run
    last_run_at = Column(DateTime, nullable=True)
    last_exit_code = Column(Integer, nullable=True)

    runs = relationship(
        "Run", back_populates="command", cascade="all, delete-orphan"
    )
    memberships = relationship(
        "GroupCommand", back_populates="command", cascade="all, delete-orphan"
    )


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    members = relationship(
        "GroupCommand",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="GroupCommand.sort_order",
    )
    group_runs = relationship(
        "GroupRun", back_populates="group", cascade="all, delete-orphan"
    )


class GroupCommand(Base):
    __tablename__ = "group_commands"

    group_id = Column(
        Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True
    )
    command_id = Column(
        Integer, ForeignKey("commands.id", ondelete="CASCADE"), primary_key=True
    )
    sort_order = Column(Integer, nullable=False, default=0)

    group = relationship("Group", back_populates="members")
    command = relationship("Command", back_populates="memberships")


class GroupRun(Base):
    __tablename__ = "group_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(
        Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="running")

    group = relationship("Group", back_populates="group_runs")
    # Runs outlive a deleted group run; their group_run_id is nulled.
    runs = relationship("Run", back_populates="group_run")

    __table_args__ = (CheckConstraint(_STATUS_CHECK, name="ck_group_runs_status"),)


class Run(Base):
    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    command_id = Column(
        Integer, ForeignKey("commands.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_run_id = Column(
        Integer, ForeignKey("group_runs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    pid = Column(Integer, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    exit_code = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="running", index=True)

    command = relationship("Command", back_populates="runs")
    group_run = relationship("GroupRun", back_populates="runs")
    log_chunks = relationship(
        "LogChunk",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="LogChunk.id",
    )

    __table_args__ = (CheckConstraint(_STATUS_CHECK, name="ck_runs_status"),)


class LogChunk(Base):
    __tablename__ = "log_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(
        Integer, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stream_type = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    run = relationship("Run", back_populates="log_chunks")

    __table_args__ = (
        CheckConstraint("stream_type IN ('stdout', 'stderr')", name="ck_log_chunks_stream"),
    )
