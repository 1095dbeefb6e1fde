"""
Process lifecycle guard.

Converts process-level termination events (normal exit, uncaught errors,
unhandled task errors, signals) into an orderly abort, cleanup, report and
exit sequence with a deterministic exit code.

Exit-code policy: the recorded code only ever grows. ``set_exit_code(0)``
after a failure leaves the failure code in place, and the abort pipeline
raises the code to at least 1.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
import threading
from typing import TYPE_CHECKING, Optional

from bsr_common.errors import RunInterrupted
from bsr_runner.engine.contracts import FinishCallback, HostProcess, InstanceStopper

if TYPE_CHECKING:
    from bsr_runner.engine.contracts import TestSuite
    from bsr_runner.engine.coordinator import RunCoordinator

logger = logging.getLogger(__name__)


class ProcessLifecycleGuard:
    """Last line of defense between a failing run and the process exit."""

    def __init__(
        self,
        host: HostProcess,
        *,
        instances: Optional[InstanceStopper] = None,
        finish_callback: Optional[FinishCallback] = None,
        settle_timeout: float = 5.0,
    ) -> None:
        """
        Args:
            host: The process boundary; ``host.exit(code)`` ends the process.
            instances: Externally managed workers/drivers stopped on abort.
            finish_callback: Hook invoked with the original error before exit.
            settle_timeout: Seconds to wait for an aborted suite to fold its
                results before the report is published.
        """
        self._host = host
        self._instances = instances
        self.finish_callback = finish_callback
        self.settle_timeout = settle_timeout
        self._exit_code = 0
        self._coordinator: Optional["RunCoordinator"] = None
        self._pipeline: Optional[asyncio.Task] = None
        self._terminated = False
        self._lock = threading.RLock()

    @property
    def coordinator(self) -> Optional["RunCoordinator"]:
        return self._coordinator

    @property
    def exit_code(self) -> int:
        with self._lock:
            return self._exit_code

    @property
    def terminated(self) -> bool:
        return self._terminated

    def bind_coordinator(self, coordinator: "RunCoordinator") -> "ProcessLifecycleGuard":
        self._coordinator = coordinator
        return self

    def set_exit_code(self, code: int) -> "ProcessLifecycleGuard":
        logger.debug("set_exit_code(%s), current=%s", code, self._exit_code, stack_info=True)
        with self._lock:
            if code > self._exit_code:
                self._exit_code = code
        return self

    def on_normal_exit(self, code: int) -> None:
        logger.debug("Process exiting normally with code %s", code)
        if code > 0:
            self.set_exit_code(code)
        self.terminate()

    def on_uncaught_error(self, error: BaseException) -> Optional[asyncio.Task]:
        return self._dispatch(error)

    def on_unhandled_rejection(self, error: BaseException) -> Optional[asyncio.Task]:
        logger.warning("Unhandled rejection: %s: %s", type(error).__name__, error)
        return self._dispatch(error)

    def on_signal(self, signum: int) -> Optional[asyncio.Task]:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received signal %s; aborting run", name)
        self.set_exit_code(128 + signum)
        return self._dispatch(
            RunInterrupted(f"Run interrupted by {name}", context={"signal": signum})
        )

    def _dispatch(self, error: BaseException) -> Optional[asyncio.Task]:
        pipeline = self._pipeline
        if pipeline is not None and not pipeline.done():
            logger.error("Additional error while aborting: %s: %s", type(error).__name__, error)
            if self._coordinator is not None:
                self._coordinator.register_uncaught_err(error)
            return pipeline

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            asyncio.run(self.abort(error))
            return None
        self._pipeline = loop.create_task(self.abort(error), name="bsr-abort-pipeline")
        return self._pipeline

    async def settled(self) -> None:
        """Wait for an in-flight abort pipeline to finish."""
        pipeline = self._pipeline
        if pipeline is not None and not pipeline.done():
            await asyncio.shield(pipeline)

    async def abort(self, error: BaseException) -> None:
        """Abort in-flight work, clean up and terminate with a failure code."""
        try:
            coordinator = self._coordinator
            suite = coordinator.current_suite if coordinator is not None else None
            if coordinator is None or suite is None:
                logger.error(
                    "Uncaught error: %s: %s",
                    type(error).__name__,
                    error,
                    exc_info=(type(error), error, error.__traceback__),
                )
            else:
                await self._unwind(coordinator, suite, error)
            await self._stop_instances()
            await self._run_finish_callback(error)
        except Exception:
            logger.exception("Abort pipeline failed")
        finally:
            self.set_exit_code(1)
            self.terminate()

    async def _unwind(
        self, coordinator: "RunCoordinator", suite: "TestSuite", error: BaseException
    ) -> None:
        coordinator.register_uncaught_err(error)
        try:
            suite.empty_queue()
        except Exception as exc:
            logger.warning("Failed to empty the suite queue: %s", exc)
            coordinator.register_uncaught_err(exc)
        # No further suite may start and the normal path must not publish.
        coordinator.suppress_report()

        runnable = suite.current_runnable
        if runnable is not None:
            try:
                await runnable.abort(error)
            except Exception as exc:
                logger.warning("Runnable abort failed: %s", exc)
                coordinator.register_uncaught_err(exc)
            if not await coordinator.wait_suite_settled(self.settle_timeout):
                logger.warning(
                    "Aborted suite did not settle within %.1fs; reporting without it",
                    self.settle_timeout,
                )

        if coordinator.result is None:
            return

        outcomes = await asyncio.gather(
            coordinator.close_open_sessions(),
            coordinator.report_results(),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error("Cleanup failed: %s: %s", type(outcome).__name__, outcome)
                coordinator.register_uncaught_err(outcome)

    async def _stop_instances(self) -> None:
        if self._instances is None:
            return
        try:
            await self._instances.stop_instances()
        except Exception as exc:
            logger.warning("Failed to stop managed instances: %s", exc)

    async def _run_finish_callback(self, error: BaseException) -> None:
        if self.finish_callback is None:
            return
        try:
            outcome = self.finish_callback(error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Finish callback failed: %s", exc)

    def terminate(self) -> "ProcessLifecycleGuard":
        with self._lock:
            if self._terminated:
                return self
            self._terminated = True
        logger.debug("Terminating process with exit code %s", self.exit_code)
        self._host.exit(self.exit_code)
        return self
