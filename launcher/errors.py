"""Error taxonomy shared by the process manager and the action layer."""

from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    ALREADY_RUNNING = "already_running"
    EMPTY_GROUP = "empty_group"
    SPAWN_FAILED = "spawn_failed"
    RUN_MISMATCH = "run_mismatch"

    @property
    def status(self) -> int:
        """Transport-level status the API layer answers with."""
        return _STATUS[self]


_STATUS = {
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_RUNNING: 409,
    ErrorCode.EMPTY_GROUP: 400,
    ErrorCode.SPAWN_FAILED: 500,
    ErrorCode.RUN_MISMATCH: 404,
}


class LauncherError(Exception):
    code: ErrorCode

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(LauncherError):
    code = ErrorCode.INVALID_ARGUMENT


class NotFound(LauncherError):
    code = ErrorCode.NOT_FOUND

    @classmethod
    def resource(cls, name: str) -> NotFound:
        return cls(f"{name} not found")


class AlreadyRunning(LauncherError):
    code = ErrorCode.ALREADY_RUNNING


class EmptyGroup(LauncherError):
    code = ErrorCode.EMPTY_GROUP


class SpawnFailed(LauncherError):
    code = ErrorCode.SPAWN_FAILED


class RunMismatch(LauncherError):
    code = ErrorCode.RUN_MISMATCH
