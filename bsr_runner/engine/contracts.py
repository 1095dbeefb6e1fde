"""Protocols for the collaborators the coordinator and the guard call into."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from bsr_runner.models.results import SuiteResults
from bsr_runner.models.settings import RunnerSettings, RunOptions


class Runnable(Protocol):
    """The step currently executing inside a suite."""

    async def abort(self, error: BaseException) -> None:
        """Abort the in-flight step; settles once it has unwound."""
        raise NotImplementedError


class SessionClient(Protocol):
    """Browser session handle held by a suite."""

    session_id: Optional[str]
    start_session_enabled: bool


class TestSuite(Protocol):
    """One test suite executed against one browser session."""

    client: Optional[SessionClient]
    current_runnable: Optional[Runnable]

    def init(self) -> None:
        """Validate configuration and load the module; may raise."""
        raise NotImplementedError

    async def run(self) -> Any:
        """Run every step of the suite."""
        raise NotImplementedError

    async def terminate(self) -> None:
        """Close the browser session held by the suite."""
        raise NotImplementedError

    def empty_queue(self) -> None:
        """Drop queued steps that have not started yet."""
        raise NotImplementedError

    def export_results(self) -> SuiteResults | dict[str, Any]:
        """Return the per-suite results consumed by the aggregator."""
        raise NotImplementedError


SuiteFactory = Callable[[str, Sequence[str], RunnerSettings, RunOptions], TestSuite]


class ResultAggregator(Protocol):
    """Accumulates results across suites and workers."""

    def add_test_suite_results(self, results: SuiteResults | dict[str, Any]) -> None:
        raise NotImplementedError

    def register_uncaught_err(self, error: BaseException) -> None:
        raise NotImplementedError

    def has_test_failures(self) -> bool:
        raise NotImplementedError

    async def save(self) -> None:
        raise NotImplementedError

    def print(self) -> None:
        raise NotImplementedError


WorkerListener = Callable[[dict[str, Any]], None]


class WorkerPoolProtocol(Protocol):
    """Spawns and supervises worker processes."""

    def add_listener(self, listener: WorkerListener) -> None:
        raise NotImplementedError

    async def run_multiple(
        self, test_environments: Sequence[str], modules: Sequence[str]
    ) -> int:
        """Run modules across workers and return the combined exit code."""
        raise NotImplementedError


class HostProcess(Protocol):
    """The process boundary: a single terminal call ending the process."""

    def exit(self, code: int) -> None:
        raise NotImplementedError


class InstanceStopper(Protocol):
    """Externally managed worker/browser-driver instances."""

    async def stop_instances(self) -> None:
        raise NotImplementedError


FinishCallback = Callable[[BaseException], Optional[Awaitable[None]]]
