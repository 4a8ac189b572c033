"""Process manager — spawns, tracks, stops and reaps command runs.

  - RunRegistry:          which processes are alive right now
  - ProcessSupervisor:    spawn → stream → reap for one run
  - LogFanout:            persists output and forwards it to live listeners
  - GroupRunCoordinator:  all-or-nothing group runs
  - TerminationController: graceful / forceful process-group stops

Can run standalone as an MCP daemon:
    python -m launcher.process_manager
"""

from launcher.process_manager.groups import GroupLaunch, GroupRunCoordinator, StartedRun
from launcher.process_manager.logs import LogFanout
from launcher.process_manager.notify import StateNotifier
from launcher.process_manager.registry import RunRegistry
from launcher.process_manager.supervisor import ProcessSupervisor, resolve_cwd
from launcher.process_manager.termination import (
    ProcessGroupSignaller,
    Signaller,
    SingleProcessSignaller,
    TerminationController,
    default_signaller,
)

__all__ = [
    "GroupLaunch",
    "GroupRunCoordinator",
    "LogFanout",
    "ProcessGroupSignaller",
    "ProcessSupervisor",
    "RunRegistry",
    "Signaller",
    "SingleProcessSignaller",
    "StartedRun",
    "StateNotifier",
    "TerminationController",
    "default_signaller",
    "resolve_cwd",
]
