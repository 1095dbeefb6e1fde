"""Orchestration core of the browser suite runner.

Re-exports the coordinator and the process lifecycle guard; see
``bsr_runner.api`` for the full public surface.
"""

from bsr_runner.engine.coordinator import RunCoordinator
from bsr_runner.engine.guard import ProcessLifecycleGuard
from bsr_runner.models.settings import RunnerSettings, RunOptions

__all__ = ["ProcessLifecycleGuard", "RunCoordinator", "RunOptions", "RunnerSettings"]
