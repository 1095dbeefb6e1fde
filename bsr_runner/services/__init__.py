"""Collaborator implementations used by the coordinator."""

from bsr_runner.services.instances import ManagedInstances
from bsr_runner.services.reporter import GlobalReporter
from bsr_runner.services.suite_loader import collect_modules, resolve_suite_factory
from bsr_runner.services.worker_pool import WorkerPool, is_child_process

__all__ = [
    "GlobalReporter",
    "ManagedInstances",
    "WorkerPool",
    "collect_modules",
    "is_child_process",
    "resolve_suite_factory",
]
