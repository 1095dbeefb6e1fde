"""Data models for the runner."""

from bsr_runner.models.results import (
    ReportSummary,
    SuiteResults,
    UncaughtErrorRecord,
    WorkerResult,
)
from bsr_runner.models.settings import RunnerSettings, RunOptions, TestWorkersConfig

__all__ = [
    "ReportSummary",
    "RunOptions",
    "RunnerSettings",
    "SuiteResults",
    "TestWorkersConfig",
    "UncaughtErrorRecord",
    "WorkerResult",
]
