"""Public runner API surface."""

from bsr_runner.engine.coordinator import RunCoordinator
from bsr_runner.engine.guard import ProcessLifecycleGuard
from bsr_runner.engine.process_events import ProcessEvents, SystemProcess
from bsr_runner.engine.state import RunState, RunStateMachine
from bsr_runner.events import StdoutEmitter, WorkerEvent
from bsr_runner.models.results import SuiteResults, UncaughtErrorRecord, WorkerResult
from bsr_runner.models.settings import RunnerSettings, RunOptions, TestWorkersConfig
from bsr_runner.services.instances import ManagedInstances
from bsr_runner.services.reporter import GlobalReporter
from bsr_runner.services.worker_pool import WorkerPool, is_child_process

__all__ = [
    "GlobalReporter",
    "ManagedInstances",
    "ProcessEvents",
    "ProcessLifecycleGuard",
    "RunCoordinator",
    "RunOptions",
    "RunState",
    "RunStateMachine",
    "RunnerSettings",
    "StdoutEmitter",
    "SuiteResults",
    "SystemProcess",
    "TestWorkersConfig",
    "UncaughtErrorRecord",
    "WorkerEvent",
    "WorkerPool",
    "WorkerResult",
    "is_child_process",
]
