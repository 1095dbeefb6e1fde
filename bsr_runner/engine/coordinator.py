"""
Default run coordinator.

Holds the logic to run through all test suites, one at a time or fanned out
to worker processes, and owns the single source of truth for which suite is
currently executing.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from bsr_common.errors import create_runner_error
from bsr_runner.engine.contracts import (
    Runnable,
    SessionClient,
    SuiteFactory,
    TestSuite,
    WorkerPoolProtocol,
)
from bsr_runner.engine.session import RunSession
from bsr_runner.engine.state import RunState
from bsr_runner.events import StdoutEmitter
from bsr_runner.models.settings import RunnerSettings, RunOptions
from bsr_runner.services.instances import ManagedInstances
from bsr_runner.services.reporter import GlobalReporter
from bsr_runner.services.worker_pool import WorkerPool, is_child_process

logger = logging.getLogger(__name__)

_NOT_CALLABLE = re.compile(r"'\w+' object is not callable$")
NOT_CALLABLE_HINT = (
    "- writing an async test case? - keep in mind that commands return awaitables; "
    "await them before using the result;\n"
    ' - writing unit tests? - make sure to specify "unit_tests_mode": true in your config.'
)


class RunCoordinator:
    """Sequence suite execution and compute the final exit posture."""

    supports_concurrency = True

    def __init__(
        self,
        settings: RunnerSettings,
        options: RunOptions,
        *,
        suite_factory: SuiteFactory,
        reporter: Optional[GlobalReporter] = None,
        worker_pool: Optional[WorkerPoolProtocol] = None,
        instances: Optional[ManagedInstances] = None,
    ) -> None:
        self.start_time = time.time()
        self.settings = settings
        self.options = options
        self._suite_factory = suite_factory
        self.global_reporter = reporter or GlobalReporter(
            settings,
            reporters=options.reporter,
            emitter=StdoutEmitter() if self.is_test_worker() else None,
        )
        self.concurrency = worker_pool
        self._instances = instances or ManagedInstances()
        self.session: Optional[RunSession] = None
        self._result: Optional[asyncio.Task] = None
        self._current_suite: Optional[TestSuite] = None
        # Last suite whose browser session may still be open.
        self._session_suite: Optional[TestSuite] = None
        self._closing: Dict[int, tuple[TestSuite, asyncio.Future]] = {}
        self._registered: List[BaseException] = []
        self._aborted = False
        self._suite_settled: Optional[asyncio.Event] = None

    @property
    def current_suite(self) -> Optional[TestSuite]:
        return self._current_suite

    @property
    def current_runnable(self) -> Optional[Runnable]:
        suite = self._current_suite
        return suite.current_runnable if suite is not None else None

    @property
    def client(self) -> Optional[SessionClient]:
        suite = self._current_suite or self._session_suite
        return suite.client if suite is not None else None

    @property
    def result(self) -> Optional[asyncio.Task]:
        return self._result

    @property
    def results(self) -> Dict[str, Any]:
        return self.global_reporter.global_results

    @property
    def publish_report(self) -> bool:
        return self.session.publish_report if self.session is not None else not self._aborted

    def is_test_worker(self) -> bool:
        return is_child_process() and self.options.test_worker

    def register_uncaught_err(self, err: BaseException) -> None:
        if any(known is err for known in self._registered):
            return
        self._registered.append(err)
        if isinstance(err, TypeError) and _NOT_CALLABLE.search(str(err)):
            err.detailed_err = NOT_CALLABLE_HINT  # type: ignore[attr-defined]
        self.global_reporter.register_uncaught_err(err)

    def suppress_report(self) -> None:
        """Cut the run short: stop the worklist and skip the normal report."""
        self._aborted = True
        if self.session is None:
            return
        self.session.publish_report = False
        if self.session.state == RunState.RUNNING:
            self.session.transition(RunState.CLOSING_SESSIONS, reason="aborted")

    def _open_session(self, suite_paths: Sequence[str]) -> RunSession:
        session = RunSession.create(list(suite_paths), self.global_reporter)
        session.state_machine.register_callback(_log_transition)
        return session

    async def wait_suite_settled(self, timeout: float) -> bool:
        """Wait until the current suite has folded its results; False on timeout."""
        settled = self._suite_settled
        if settled is None or settled.is_set():
            return True
        try:
            await asyncio.wait_for(asyncio.shield(settled.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, suite_paths: Sequence[str]) -> int:
        """
        Main entry-point of the coordinator.

        Runs every suite, closes open sessions and publishes the report.
        Errors are folded into the reporter; the returned exit code is 0 only
        when nothing failed.
        """
        self.session = self._open_session(suite_paths)
        self._result = asyncio.ensure_future(self._run_pipeline(self.session))
        return await self._result

    async def _run_pipeline(self, session: RunSession) -> int:
        session.transition(RunState.RUNNING, reason=f"{len(session.full_paths)} suite(s)")
        try:
            await self.run_sequential(session.full_paths)
        except Exception as err:
            logger.error("Run aborted: %s", err)
            self.register_uncaught_err(err)
        return await self._finish(session)

    async def _finish(self, session: RunSession) -> int:
        if session.state == RunState.RUNNING:
            session.transition(RunState.CLOSING_SESSIONS)
        try:
            await self.close_open_sessions()
        except Exception as err:
            self.register_uncaught_err(err)

        if not session.publish_report:
            session.transition(RunState.SUPPRESSED, reason="report suppressed")
            session.exit_code = 1
        else:
            session.transition(RunState.REPORTING)
            try:
                has_failures = await self.report_results()
            except Exception as err:
                self.register_uncaught_err(err)
                has_failures = True
            session.exit_code = 1 if has_failures else 0
        session.transition(RunState.DONE)
        return session.exit_code

    async def run_sequential(self, suite_paths: Sequence[str]) -> None:
        """Run suites one at a time in the given order, folding each result."""
        if self.session is None:
            self.session = self._open_session(suite_paths)
        session = self.session
        session.worklist = list(suite_paths)
        full_paths = list(suite_paths)

        while not self._aborted:
            module_path = session.next_path()
            if module_path is None:
                break
            await self.run_test_suite(module_path, full_paths)

    async def run_test_suite(self, module_path: str, modules: Sequence[str]) -> None:
        settled = self._suite_settled = asyncio.Event()
        try:
            await self._run_suite(module_path, modules)
        finally:
            settled.set()

    async def _run_suite(self, module_path: str, modules: Sequence[str]) -> None:
        try:
            suite = self._suite_factory(module_path, modules, self.settings, self.options)
            self._current_suite = suite
            self._session_suite = suite
            suite.init()
        except Exception as err:
            self._current_suite = None
            raise create_runner_error(err, context={"module": module_path})

        logger.info("Running suite %s", module_path)
        try:
            await suite.run()
        except Exception as err:
            logger.error("Suite %s raised %s: %s", module_path, type(err).__name__, err)
            self.register_uncaught_err(err)

        try:
            self.global_reporter.add_test_suite_results(suite.export_results())
        except Exception as err:
            self.register_uncaught_err(err)
        finally:
            self._current_suite = None

    async def close_open_sessions(self) -> None:
        """Terminate the live session of the current (or last) suite, at most once."""
        suite = self._current_suite or self._session_suite
        client = suite.client if suite is not None else None
        if (
            suite is None
            or client is None
            or not client.session_id
            or not client.start_session_enabled
            or not self.settings.start_session
        ):
            return

        entry = self._closing.get(id(suite))
        if entry is None:
            logger.info("Attempting to close session %s...", client.session_id)
            entry = (suite, asyncio.ensure_future(suite.terminate()))
            self._closing[id(suite)] = entry
        await entry[1]

    async def report_results(self) -> bool:
        """Publish the report and return whether any failures occurred."""
        if self.is_test_worker():
            return self.global_reporter.has_test_failures()

        self.print_global_results()
        await self.global_reporter.save()
        return self.global_reporter.has_test_failures()

    def print_global_results(self) -> "RunCoordinator":
        self.global_reporter.create(self.start_time).print()
        return self

    async def run_concurrent(
        self, test_environments: Sequence[str], suite_paths: Sequence[str]
    ) -> int:
        """Fan suites out to worker processes and return the combined exit code."""
        self.session = self._open_session(suite_paths)
        self._result = asyncio.ensure_future(
            self._run_concurrent_pipeline(self.session, list(test_environments))
        )
        return await self._result

    async def _run_concurrent_pipeline(
        self, session: RunSession, test_environments: List[str]
    ) -> int:
        if self.concurrency is None:
            self.concurrency = WorkerPool(self.settings, self.options, instances=self._instances)
        self.global_reporter.setup_child_process_listener(self.concurrency)

        session.transition(RunState.RUNNING, reason="concurrent")
        try:
            exit_code = await self.concurrency.run_multiple(
                test_environments, list(session.full_paths)
            )
        except Exception as err:
            logger.error("Worker pool failed: %s", err)
            self.register_uncaught_err(err)
            exit_code = 1
        session.worklist.clear()

        if session.state == RunState.RUNNING:
            session.transition(RunState.CLOSING_SESSIONS)
        if not session.publish_report:
            session.transition(RunState.SUPPRESSED, reason="report suppressed")
            session.exit_code = max(exit_code, 1)
        else:
            session.transition(RunState.REPORTING)
            try:
                has_failures = await self.report_results()
            except Exception as err:
                self.register_uncaught_err(err)
                has_failures = True
            session.exit_code = exit_code or (1 if has_failures else 0)
        session.transition(RunState.DONE)
        return session.exit_code


def _log_transition(state: RunState, reason: Optional[str]) -> None:
    if reason:
        logger.debug("Run state -> %s (%s)", state.value, reason)
    else:
        logger.debug("Run state -> %s", state.value)
