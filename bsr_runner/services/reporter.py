"""Global reporter: accumulates results across suites and workers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from bsr_common.errors import ReportPersistenceError, WorkerCrashError, wrap_error
from bsr_runner.engine.contracts import WorkerPoolProtocol
from bsr_runner.events import SUITE_FINISHED, WORKER_CRASHED, EventEmitter, WorkerEvent
from bsr_runner.models.results import ReportSummary, SuiteResults, UncaughtErrorRecord
from bsr_runner.models.settings import RunnerSettings

logger = logging.getLogger(__name__)


class GlobalReporter:
    """Aggregate per-suite results and render the final report."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        reporters: Optional[List[str]] = None,
        emitter: Optional[EventEmitter] = None,
        console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self.reporters = list(reporters or ["json"])
        self._emitter = emitter
        self._console = console or Console()
        self._suites: Dict[str, SuiteResults] = {}
        self._order: List[str] = []
        self.uncaught_errors: List[UncaughtErrorRecord] = []
        self._start_time: Optional[float] = None
        self._summary: Optional[ReportSummary] = None

    @property
    def global_results(self) -> Dict[str, Any]:
        return {
            "modules": {key: self._suites[key].model_dump() for key in self._order},
            "uncaught_errors": [record.to_dict() for record in self.uncaught_errors],
        }

    @property
    def suite_results(self) -> List[SuiteResults]:
        return [self._suites[key] for key in self._order]

    def add_test_suite_results(self, results: SuiteResults | Dict[str, Any]) -> None:
        """Fold one suite's exported results; later results for a key replace earlier ones."""
        suite = results if isinstance(results, SuiteResults) else SuiteResults.model_validate(results)
        if suite.key not in self._suites:
            self._order.append(suite.key)
        self._suites[suite.key] = suite
        logger.debug(
            "Suite results folded: %s (passed=%d failed=%d errors=%d)",
            suite.key,
            suite.passed,
            suite.failed,
            suite.errors,
        )
        if self._emitter is not None:
            self._emitter.emit(
                WorkerEvent(type=SUITE_FINISHED, payload=suite.model_dump(mode="json"))
            )

    def register_uncaught_err(self, error: BaseException) -> None:
        record = UncaughtErrorRecord.from_exception(error)
        self.uncaught_errors.append(record)
        logger.error("Uncaught error: %s: %s", record.error_type, record.message)
        if record.detailed_err:
            logger.error("%s", record.detailed_err)

    def has_test_failures(self) -> bool:
        if self.uncaught_errors:
            return True
        return any(suite.has_failures for suite in self._suites.values())

    def summary(self) -> ReportSummary:
        suites = self._suites.values()
        elapsed = time.time() - self._start_time if self._start_time else 0.0
        return ReportSummary(
            suites=len(self._suites),
            passed=sum(s.passed for s in suites),
            failed=sum(s.failed for s in suites),
            errors=sum(s.errors for s in suites),
            skipped=sum(s.skipped for s in suites),
            uncaught=len(self.uncaught_errors),
            elapsed=elapsed,
        )

    def create(self, start_time: float) -> "GlobalReporter":
        """Freeze the summary for the run that started at start_time."""
        self._start_time = start_time
        self._summary = self.summary()
        return self

    def print(self) -> None:
        summary = self._summary or self.summary()
        table = Table(title="[b]Test results[/b]", header_style="bold white", row_styles=("", "dim"))
        table.add_column("Suite", overflow="fold")
        table.add_column("Passed", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Errors", justify="right", style="red")
        table.add_column("Skipped", justify="right", style="yellow")
        table.add_column("Time (s)", justify="right", style="blue")
        for suite in self.suite_results:
            table.add_row(
                suite.key,
                str(suite.passed),
                str(suite.failed),
                str(suite.errors),
                str(suite.skipped),
                f"{suite.time:.2f}",
            )
        self._console.print(table)

        for record in self.uncaught_errors:
            self._console.print(f"[red]Uncaught {record.error_type}:[/red] {record.message}")
            if record.detailed_err:
                self._console.print(record.detailed_err)

        if summary.has_failures:
            self._console.print(
                f"[red]FAILED:[/red] {summary.failed} failed, {summary.errors} errors, "
                f"{summary.uncaught} uncaught, {summary.passed} passed "
                f"({summary.elapsed:.2f}s)"
            )
        else:
            self._console.print(
                f"[green]OK.[/green] {summary.passed} assertions passed "
                f"in {summary.suites} suites ({summary.elapsed:.2f}s)"
            )

    async def save(self) -> None:
        """Persist the global report as JSON under the output folder."""
        if "json" not in self.reporters:
            return
        target = self.settings.report_path
        summary = self._summary or self.summary()
        payload = {
            "summary": {
                "suites": summary.suites,
                "passed": summary.passed,
                "failed": summary.failed,
                "errors": summary.errors,
                "skipped": summary.skipped,
                "uncaught": summary.uncaught,
                "elapsed": summary.elapsed,
            },
            **self.global_results,
        }
        try:
            await asyncio.to_thread(_write_report, target, payload)
        except OSError as exc:
            raise wrap_error(
                ReportPersistenceError,
                f"Failed to save report to {target}",
                context={"path": target},
                cause=exc,
            ) from exc
        logger.info("Report saved to %s", target)

    def setup_child_process_listener(self, pool: WorkerPoolProtocol) -> None:
        """Fold results reported by worker processes into this reporter."""
        pool.add_listener(self._on_worker_event)

    def _on_worker_event(self, data: Dict[str, Any]) -> None:
        event_type = data.get("type")
        if event_type == SUITE_FINISHED:
            try:
                self.add_test_suite_results(data.get("payload") or {})
            except ValidationError as exc:
                logger.warning("Discarding malformed suite result from %s: %s", data.get("worker"), exc)
            return
        if event_type == WORKER_CRASHED:
            payload = data.get("payload") or {}
            message = payload.get("error") or (
                f"Worker {data.get('worker')} exited without reporting results"
            )
            context = payload.get("error_context", payload)
            self.register_uncaught_err(WorkerCrashError(message, context=context))


def _write_report(target: Path, payload: Dict[str, Any]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
