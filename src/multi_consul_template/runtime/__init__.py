"""Runtime module: resumable loops and renderer process supervision.

This module provides the cooperative loop primitive shared by the watchers
and the change applier, and the supervisor that keeps consul-template alive.
"""

from __future__ import annotations

from .resumable import Complete, Continue, ResumableTask, StepResult, StopToken, TaskOutcome
from .supervisor import ProcessSupervisor, ReloadTarget, SupervisorState, SupervisorStats

__all__ = [
    "Complete",
    "Continue",
    "ProcessSupervisor",
    "ReloadTarget",
    "ResumableTask",
    "StepResult",
    "StopToken",
    "SupervisorState",
    "SupervisorStats",
    "TaskOutcome",
]
