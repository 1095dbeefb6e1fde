"""Tests for runner settings and run options."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from bsr_runner.models.results import UncaughtErrorRecord
from bsr_runner.models.settings import (
    RunnerSettings,
    RunOptions,
    TestWorkersConfig,
    resolve_config_path,
)
from bsr_common.errors import SuiteInitError


pytestmark = pytest.mark.unit_runner


def test_defaults():
    settings = RunnerSettings()
    assert settings.report_path == Path("tests_output") / "report.json"
    assert settings.start_session is True
    assert settings.test_settings == {"default": {}}


def test_load_from_file(tmp_path, monkeypatch):
    monkeypatch.delenv("BSR_TEST_WORKERS", raising=False)
    path = tmp_path / "bsr.json"
    path.write_text(
        '{"suite_engine": "pkg:factory", "test_workers": {"enabled": true, "workers": 3},'
        ' "test_settings": {"chrome": {"browser": "chrome"}}}'
    )

    settings = RunnerSettings.load(path)

    assert settings.suite_engine == "pkg:factory"
    assert settings.test_workers.resolve_worker_count() == 3
    assert settings.test_settings["chrome"] == {"browser": "chrome"}


def test_invalid_worker_count_rejected():
    with pytest.raises(ValidationError):
        TestWorkersConfig(workers=0)


def test_empty_report_filename_rejected():
    with pytest.raises(ValidationError):
        RunnerSettings(report_filename=" ")


def test_auto_workers_resolve_to_cpu_count(monkeypatch):
    monkeypatch.delenv("BSR_TEST_WORKERS", raising=False)
    monkeypatch.setattr("os.cpu_count", lambda: 6)
    assert TestWorkersConfig().resolve_worker_count() == 6


def test_worker_count_env_override(monkeypatch):
    monkeypatch.setenv("BSR_TEST_WORKERS", "4")
    assert TestWorkersConfig(workers=2).resolve_worker_count() == 4
    assert TestWorkersConfig().resolve_worker_count() == 4


@pytest.mark.parametrize("value", ["0", "-1", "many", ""])
def test_invalid_worker_count_override_is_ignored(monkeypatch, value):
    monkeypatch.setenv("BSR_TEST_WORKERS", value)
    assert TestWorkersConfig(workers=3).resolve_worker_count() == 3


@pytest.mark.parametrize(
    "options, workers_enabled, expected",
    [
        (RunOptions(), False, False),
        (RunOptions(), True, True),
        (RunOptions(parallel=True), False, True),
        (RunOptions(parallel=False), True, False),
        (RunOptions(env=["chrome", "firefox"]), False, True),
        (RunOptions(env=["chrome", "firefox"], test_worker=True), True, False),
    ],
)
def test_wants_concurrency(options, workers_enabled, expected):
    settings = RunnerSettings(test_workers=TestWorkersConfig(enabled=workers_enabled))
    assert options.wants_concurrency(settings) is expected


def test_config_path_resolution(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BSR_CONFIG_PATH", raising=False)
    assert resolve_config_path(None) is None

    (tmp_path / "bsr.json").write_text("{}")
    assert resolve_config_path(None) == tmp_path / "bsr.json"

    monkeypatch.setenv("BSR_CONFIG_PATH", str(tmp_path / "other.json"))
    assert resolve_config_path(None) == tmp_path / "other.json"
    assert resolve_config_path(Path("explicit.json")) == Path("explicit.json")


def test_uncaught_error_record_keeps_context_and_hint():
    err = SuiteInitError("bad suite", context={"module": Path("a.py")})
    err.detailed_err = "check the config"

    record = UncaughtErrorRecord.from_exception(err)

    assert record.error_type == "SuiteInitError"
    assert record.context == {"module": "a.py"}
    assert record.detailed_err == "check the config"
