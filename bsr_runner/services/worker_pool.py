"""Run suites in parallel worker processes and merge their results."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from bsr_common.errors import WorkerCrashError, error_to_payload, wrap_error
from bsr_runner.engine.contracts import WorkerListener
from bsr_runner.events import (
    SUITE_FINISHED,
    WORKER_CRASHED,
    WORKER_EXITED,
    WORKER_LABEL_ENV,
    WorkerEvent,
    extract_event_data,
)
from bsr_runner.models.results import WorkerResult
from bsr_runner.models.settings import RunnerSettings, RunOptions
from bsr_runner.services.instances import ManagedInstances

logger = logging.getLogger(__name__)

PARALLEL_MODE_ENV = "BSR_PARALLEL_MODE"
# Suite result events carry every error message on one line.
STREAM_LIMIT = 16 * 1024 * 1024
STOP_GRACE_PERIOD = 5.0


def is_child_process() -> bool:
    """Return True when running inside a worker spawned by the pool."""
    return os.environ.get(PARALLEL_MODE_ENV) == "1"


class WorkerPool:
    """Spawn and supervise worker processes, each running a subset of suites."""

    def __init__(
        self,
        settings: RunnerSettings,
        options: RunOptions,
        *,
        instances: Optional[ManagedInstances] = None,
        command_builder: Optional[Callable[[str, List[str]], List[str]]] = None,
        output: Optional[Callable[[str], None]] = None,
        stream_limit: int = STREAM_LIMIT,
    ) -> None:
        self.settings = settings
        self.options = options
        self._instances = instances or ManagedInstances()
        self._command_builder = command_builder or self._default_command
        self._output = output or _echo
        self._stream_limit = stream_limit
        self._listeners: List[WorkerListener] = []
        self.results: List[WorkerResult] = []

    def add_listener(self, listener: WorkerListener) -> None:
        self._listeners.append(listener)

    def partition(
        self, test_environments: Sequence[str], modules: Sequence[str]
    ) -> List[tuple[str, str, List[str]]]:
        """
        Split work into (label, environment, modules) worker assignments.

        More than one environment: one worker per environment running every
        module. Otherwise one worker per module.
        """
        envs = list(test_environments) or ["default"]
        if len(envs) > 1:
            return [(env, env, list(modules)) for env in envs]
        env = envs[0]
        return [(Path(module).stem or module, env, [module]) for module in modules]

    async def run_multiple(
        self, test_environments: Sequence[str], modules: Sequence[str]
    ) -> int:
        """
        Run modules across workers and return the combined exit code.

        Returns only once every worker process has exited. A worker whose
        supervision fails is stopped and counted as crashed.
        """
        assignments = self.partition(test_environments, modules)
        if not assignments:
            return 0
        max_workers = self.settings.test_workers.resolve_worker_count()
        semaphore = asyncio.Semaphore(max_workers)
        logger.info(
            "Launching %d worker(s), at most %d concurrently", len(assignments), max_workers
        )

        async def _bounded(label: str, env: str, worker_modules: List[str]) -> WorkerResult:
            async with semaphore:
                try:
                    return await self._run_worker(label, env, worker_modules)
                except Exception as exc:
                    logger.error("Worker %s failed: %s: %s", label, type(exc).__name__, exc)
                    self._dispatch_crash(
                        label, worker_modules, f"Supervising worker {label} failed", exc
                    )
                    return WorkerResult(label=label, modules=worker_modules, exit_code=1)

        self.results = list(
            await asyncio.gather(*(_bounded(*assignment) for assignment in assignments))
        )
        return 1 if any(result.has_failures for result in self.results) else 0

    async def _run_worker(self, label: str, env: str, modules: List[str]) -> WorkerResult:
        result = WorkerResult(label=label, modules=modules)
        cmd = self._command_builder(env, modules)
        worker_env = dict(os.environ)
        worker_env.update({PARALLEL_MODE_ENV: "1", WORKER_LABEL_ENV: label})
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=worker_env,
                limit=self._stream_limit,
            )
        except OSError as exc:
            logger.error("Failed to launch worker %s: %s", label, exc)
            result.exit_code = 1
            self._dispatch_crash(label, modules, f"Failed to launch worker {label}", exc)
            return result

        instance_name = f"worker:{label}:{proc.pid}"
        self._instances.register(instance_name, proc)
        try:
            await self._read_output(result, proc)
            result.exit_code = await proc.wait()
        finally:
            if proc.returncode is None:
                await _stop_process(label, proc)
            self._instances.unregister(instance_name)

        logger.debug("Worker %s exited with code %s", label, result.exit_code)
        self._dispatch(
            WorkerEvent(
                type=WORKER_EXITED,
                worker=label,
                payload={"exit_code": result.exit_code, "reported": result.reported},
            )
        )
        if result.crashed:
            self._dispatch(
                WorkerEvent(
                    type=WORKER_CRASHED,
                    worker=label,
                    payload={"exit_code": result.exit_code, "modules": modules},
                )
            )
        return result

    async def _read_output(self, result: WorkerResult, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError:
                # The reader dropped the oversized chunk; keep reading.
                logger.warning(
                    "Worker %s wrote a line longer than %d bytes; discarding it",
                    result.label,
                    self._stream_limit,
                )
                continue
            if not raw:
                return
            self._handle_line(result, raw.decode(errors="replace").rstrip("\n"))

    def _handle_line(self, result: WorkerResult, line: str) -> None:
        data = extract_event_data(line)
        if data is None:
            self._output(f"[{result.label}] {line}")
            return
        if not data.get("worker"):
            data["worker"] = result.label
        if data.get("type") == SUITE_FINISHED:
            result.reported += 1
        self._notify(data)

    def _dispatch(self, event: WorkerEvent) -> None:
        self._notify(event.to_dict())

    def _dispatch_crash(
        self, label: str, modules: List[str], message: str, cause: BaseException
    ) -> None:
        error = wrap_error(
            WorkerCrashError,
            f"{message}: {type(cause).__name__}: {cause}",
            context={"modules": modules},
            cause=cause,
        )
        self._dispatch(
            WorkerEvent(type=WORKER_CRASHED, worker=label, payload=error_to_payload(error))
        )

    def _notify(self, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("Worker event listener failed")

    def _default_command(self, env: str, modules: List[str]) -> List[str]:
        cmd = [sys.executable, "-m", "bsr_runner.cli", "run", "--test-worker", "--env", env]
        if self.options.config is not None:
            cmd.extend(["--config", str(self.options.config)])
        cmd.extend(modules)
        return cmd


async def _stop_process(label: str, proc: asyncio.subprocess.Process) -> None:
    logger.warning("Stopping worker %s (pid %s)", label, proc.pid)
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.shield(asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_PERIOD))
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await asyncio.shield(proc.wait())


def _echo(line: str) -> None:
    print(line, flush=True)
