from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable


# ---------------------------------------------------------------------------
# Status enums: stored verbatim in the database
# ---------------------------------------------------------------------------

class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING

    @classmethod
    def from_returncode(cls, returncode: int) -> RunStatus:
        """Map an asyncio returncode to a terminal status.

        Negative returncodes mean the process died from a signal.
        """
        if returncode < 0:
            return cls.KILLED
        return cls.SUCCESS if returncode == 0 else cls.FAILED


# Exit code recorded for a process that has no real one (died from a signal).
KILLED_EXIT_CODE = -1


class StreamType(str, enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class SignalKind(enum.Enum):
    GRACEFUL = "graceful"  # SIGTERM
    FORCE = "force"        # SIGKILL


# ---------------------------------------------------------------------------
# Live log events: the envelope delivered to log subscribers
# ---------------------------------------------------------------------------

class LogEventType(enum.Enum):
    CHUNK = "chunk"        # a piece of output, verbatim
    FINISHED = "finished"  # the run exited; no more chunks follow


@dataclass(frozen=True)
class LogEvent:
    type: LogEventType
    run_id: int
    content: str = ""
    stream: StreamType | None = None

    @property
    def finished(self) -> bool:
        return self.type is LogEventType.FINISHED


LogListener = Callable[[LogEvent], None]
StateObserver = Callable[[], None]
Unsubscribe = Callable[[], None]


# ---------------------------------------------------------------------------
# Registry record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiveRun:
    pid: int
    command_id: int
    run_id: int
    group_run_id: int | None = None
