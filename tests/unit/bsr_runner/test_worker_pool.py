"""Tests for worker fan-out, using short-lived Python child processes."""

from __future__ import annotations

import asyncio
import json
import sys

import pytest

from bsr_runner.events import EVENT_TOKEN, SUITE_FINISHED, WORKER_CRASHED, WORKER_EXITED
from bsr_runner.models.results import WorkerResult
from bsr_runner.models.settings import RunnerSettings, RunOptions, TestWorkersConfig
from bsr_runner.services.instances import ManagedInstances
from bsr_runner.services.worker_pool import (
    PARALLEL_MODE_ENV,
    WorkerPool,
    is_child_process,
)


pytestmark = pytest.mark.unit_runner


def _reporting_worker(env, modules):
    lines = [f"print('starting {env}')"]
    for module in modules:
        event = {"type": SUITE_FINISHED, "payload": {"module_path": module, "passed": 1}}
        marker = f"{EVENT_TOKEN} {json.dumps(event)}"
        lines.append(f"print({marker!r})")
    lines.append("import os; assert os.environ['BSR_PARALLEL_MODE'] == '1'")
    return [sys.executable, "-c", "\n".join(lines)]


def _silent_worker(exit_code):
    def build(env, modules):
        return [sys.executable, "-c", f"import sys; sys.exit({exit_code})"]

    return build


def _script_worker(*lines):
    def build(env, modules):
        return [sys.executable, "-c", "\n".join(lines)]

    return build


def _long_event_line(module, size):
    event = {
        "type": SUITE_FINISHED,
        "payload": {"module_path": module, "error_messages": ["x" * size]},
    }
    return f"print({EVENT_TOKEN!r} + ' ' + {json.dumps(event)!r}, flush=True)"


class RecordingInstances(ManagedInstances):
    def __init__(self):
        super().__init__()
        self.handles = []

    def register(self, name, handle):
        self.handles.append(handle)
        super().register(name, handle)


def _pool(command_builder, workers=2, **kwargs):
    settings = RunnerSettings(test_workers=TestWorkersConfig(enabled=True, workers=workers))
    output = []
    pool = WorkerPool(
        settings,
        RunOptions(),
        command_builder=command_builder,
        output=output.append,
        **kwargs,
    )
    events = []
    pool.add_listener(events.append)
    return pool, events, output


class TestPartition:
    def test_one_worker_per_module_for_single_env(self):
        pool, _, _ = _pool(_reporting_worker)
        assert pool.partition(["default"], ["tests/a.py", "tests/b.py"]) == [
            ("a", "default", ["tests/a.py"]),
            ("b", "default", ["tests/b.py"]),
        ]

    def test_one_worker_per_env_for_multiple_envs(self):
        pool, _, _ = _pool(_reporting_worker)
        assert pool.partition(["chrome", "firefox"], ["a.py", "b.py"]) == [
            ("chrome", "chrome", ["a.py", "b.py"]),
            ("firefox", "firefox", ["a.py", "b.py"]),
        ]


class TestRunMultiple:
    async def test_collects_events_from_every_worker(self):
        pool, events, output = _pool(_reporting_worker)

        exit_code = await pool.run_multiple(["default"], ["a.py", "b.py"])

        assert exit_code == 0
        finished = [e for e in events if e["type"] == SUITE_FINISHED]
        assert sorted(e["payload"]["module_path"] for e in finished) == ["a.py", "b.py"]
        assert {e["worker"] for e in finished} == {"a", "b"}
        assert "[a] starting default" in output
        assert all(result.reported == 1 for result in pool.results)

    async def test_respects_worker_cap(self):
        pool, events, _ = _pool(_reporting_worker, workers=1)

        exit_code = await pool.run_multiple(["default"], ["a.py", "b.py", "c.py"])

        assert exit_code == 0
        assert len([e for e in events if e["type"] == WORKER_EXITED]) == 3

    async def test_non_zero_exit_fails_the_run(self):
        pool, events, _ = _pool(_silent_worker(2))

        exit_code = await pool.run_multiple(["default"], ["a.py"])

        assert exit_code == 1
        assert pool.results[0].exit_code == 2
        assert [e["type"] for e in events] == [WORKER_EXITED, WORKER_CRASHED]

    async def test_silent_worker_counts_as_crashed(self):
        pool, events, _ = _pool(_silent_worker(0))

        exit_code = await pool.run_multiple(["default"], ["a.py"])

        assert exit_code == 1
        crashed = [e for e in events if e["type"] == WORKER_CRASHED]
        assert crashed[0]["payload"]["modules"] == ["a.py"]

    async def test_launch_failure_is_reported(self, tmp_path):
        missing = str(tmp_path / "no-such-binary")
        pool, events, _ = _pool(lambda env, modules: [missing])

        exit_code = await pool.run_multiple(["default"], ["a.py"])

        assert exit_code == 1
        assert events[0]["type"] == WORKER_CRASHED

    async def test_no_modules_runs_nothing(self):
        pool, events, _ = _pool(_reporting_worker)
        assert await pool.run_multiple(["default"], []) == 0
        assert events == []

    async def test_workers_are_unregistered_after_exit(self):
        instances = ManagedInstances()
        pool, _, _ = _pool(_reporting_worker, instances=instances)

        await pool.run_multiple(["default"], ["a.py"])

        assert instances.names() == []

    async def test_failing_listener_does_not_break_the_pool(self):
        pool, events, _ = _pool(_reporting_worker)

        def broken(_data):
            raise RuntimeError("listener bug")

        pool.add_listener(broken)

        assert await pool.run_multiple(["default"], ["a.py"]) == 0
        assert any(e["type"] == SUITE_FINISHED for e in events)


class TestChildProcess:
    def test_is_child_process(self, monkeypatch):
        monkeypatch.setenv(PARALLEL_MODE_ENV, "1")
        assert is_child_process()
        monkeypatch.setenv(PARALLEL_MODE_ENV, "0")
        assert not is_child_process()

    def test_default_command_runs_cli_in_worker_mode(self, tmp_path):
        config = tmp_path / "bsr.json"
        pool = WorkerPool(RunnerSettings(), RunOptions(config=config))

        cmd = pool._default_command("chrome", ["a.py"])

        assert cmd[:3] == [sys.executable, "-m", "bsr_runner.cli"]
        assert "--test-worker" in cmd
        assert cmd[cmd.index("--env") + 1] == "chrome"
        assert cmd[cmd.index("--config") + 1] == str(config)
        assert cmd[-1] == "a.py"


def test_worker_result_crash_rules():
    assert WorkerResult(label="a", modules=["a.py"], exit_code=0).crashed
    assert not WorkerResult(label="a", modules=[], exit_code=0).has_failures
    assert WorkerResult(label="a", modules=["a.py"], exit_code=1, reported=1).has_failures


class TestLongOutputAndSupervision:
    async def test_event_line_larger_than_default_reader_limit(self):
        worker = _script_worker(_long_event_line("a.py", 70000), "import time; time.sleep(0.5)")
        pool, events, _ = _pool(worker)

        exit_code = await pool.run_multiple(["default"], ["a.py"])

        finished = [e for e in events if e["type"] == SUITE_FINISHED]
        assert len(finished) == 1
        assert len(finished[0]["payload"]["error_messages"][0]) == 70000
        assert pool.results[0].exit_code == 0
        assert pool.results[0].reported == 1
        assert exit_code == 0

    async def test_line_over_stream_limit_is_discarded(self):
        worker = _script_worker(_long_event_line("a.py", 4096), "print('after', flush=True)")
        pool, events, output = _pool(worker, stream_limit=1024)

        exit_code = await pool.run_multiple(["default"], ["a.py"])

        assert exit_code == 1
        assert pool.results[0].exit_code == 0
        assert pool.results[0].reported == 0
        assert "[a] after" in output
        assert [e["type"] for e in events] == [WORKER_EXITED, WORKER_CRASHED]

    async def test_supervision_failure_stops_child_and_counts_as_crash(self):
        instances = RecordingInstances()
        worker = _script_worker("print('hello', flush=True)", "import time; time.sleep(30)")
        pool, events, _ = _pool(worker, instances=instances)

        def broken_output(line):
            raise RuntimeError("console gone")

        pool._output = broken_output

        exit_code = await asyncio.wait_for(pool.run_multiple(["default"], ["a.py"]), timeout=10)

        assert exit_code == 1
        assert pool.results[0].crashed
        assert instances.handles[0].returncode is not None
        assert instances.names() == []
        crashed = [e for e in events if e["type"] == WORKER_CRASHED]
        assert crashed[0]["payload"]["error_type"] == "WorkerCrashError"
        assert "console gone" in crashed[0]["payload"]["error"]
        assert crashed[0]["payload"]["error_context"] == {"modules": ["a.py"]}

    async def test_sibling_results_survive_a_failed_worker(self):
        def build(env, modules):
            if modules == ["b.py"]:
                return _script_worker("print('noise', flush=True)")(env, modules)
            return _reporting_worker(env, modules)

        pool, events, _ = _pool(build)

        def output(line):
            if line.startswith("[b]"):
                raise RuntimeError("console gone")

        pool._output = output

        exit_code = await pool.run_multiple(["default"], ["a.py", "b.py"])

        assert exit_code == 1
        by_label = {result.label: result for result in pool.results}
        assert by_label["a"].reported == 1
        assert by_label["b"].crashed

    async def test_cancellation_stops_running_children(self):
        instances = RecordingInstances()
        worker = _script_worker("print('ready', flush=True)", "import time; time.sleep(30)")
        pool, _, output = _pool(worker, instances=instances)
        ready = asyncio.Event()

        def record(line):
            output.append(line)
            ready.set()

        pool._output = record

        task = asyncio.create_task(pool.run_multiple(["default"], ["a.py"]))
        await asyncio.wait_for(ready.wait(), timeout=10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert instances.handles[0].returncode is not None
        assert instances.names() == []

    async def test_launch_failure_payload_is_structured(self, tmp_path):
        missing = str(tmp_path / "no-such-binary")
        pool, events, _ = _pool(lambda env, modules: [missing])

        await pool.run_multiple(["default"], ["a.py"])

        payload = events[0]["payload"]
        assert payload["error_type"] == "WorkerCrashError"
        assert payload["error"].startswith("Failed to launch worker a")
        assert payload["error_context"] == {"modules": ["a.py"]}
