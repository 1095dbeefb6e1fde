"""Runner settings (canonical configuration for one invocation)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from bsr_common.config import parse_int_env

DEFAULT_CONFIG_NAME = "bsr.json"
WORKERS_ENV = "BSR_TEST_WORKERS"


class TestWorkersConfig(BaseModel):
    """Configuration for running suites in parallel worker processes."""

    __test__ = False

    enabled: bool = Field(default=False, description="Run each suite in its own worker process")
    workers: Union[int, Literal["auto"]] = Field(
        default="auto",
        description="Maximum number of concurrent workers, or 'auto' for the CPU count",
    )

    @model_validator(mode="after")
    def _validate_workers(self) -> "TestWorkersConfig":
        if isinstance(self.workers, int) and self.workers < 1:
            raise ValueError("TestWorkersConfig: 'workers' must be >= 1")
        return self

    def resolve_worker_count(self) -> int:
        """
        Return the concrete worker cap.

        BSR_TEST_WORKERS overrides the configured value; "auto" resolves to
        the CPU count.
        """
        override = parse_int_env(os.environ.get(WORKERS_ENV))
        if override is not None and override >= 1:
            return override
        if self.workers == "auto":
            return os.cpu_count() or 1
        return int(self.workers)


class RunnerSettings(BaseModel):
    """Settings shared by the coordinator, the reporter and the worker pool."""

    output_folder: Path = Field(default=Path("tests_output"), description="Directory receiving the global report")
    report_filename: str = Field(default="report.json", description="File name of the persisted global report")
    start_session: bool = Field(default=True, description="Open (and therefore close) browser sessions")
    suite_engine: Optional[str] = Field(
        default=None,
        description="Import path ('module:attr') of the test suite factory",
    )
    src_folders: List[Path] = Field(default_factory=list, description="Folders scanned when no paths are given")
    test_workers: TestWorkersConfig = Field(default_factory=TestWorkersConfig)
    test_settings: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: {"default": {}},
        description="Named test environments",
    )
    unit_tests_mode: bool = Field(default=False, description="Run suites without a browser session")

    @model_validator(mode="after")
    def _validate_report_filename(self) -> "RunnerSettings":
        if not self.report_filename or not self.report_filename.strip():
            raise ValueError("RunnerSettings: 'report_filename' must be non-empty")
        return self

    @property
    def report_path(self) -> Path:
        return self.output_folder / self.report_filename

    def save(self, filepath: Path) -> None:
        filepath.write_text(self.model_dump_json(indent=2))

    @classmethod
    def load(cls, filepath: Path) -> "RunnerSettings":
        return cls.model_validate_json(filepath.read_text())


def resolve_config_path(config_path: Optional[Path]) -> Optional[Path]:
    """
    Return the settings file to load.

    Respects an explicit path, the BSR_CONFIG_PATH environment variable or a
    local bsr.json, in that order.
    """
    if config_path is not None:
        return Path(config_path).expanduser()
    env_path = os.environ.get("BSR_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.exists():
        return local
    return None


class RunOptions(BaseModel):
    """Command-line options for one invocation."""

    config: Optional[Path] = None
    env: List[str] = Field(default_factory=lambda: ["default"])
    test_worker: bool = False
    parallel: Optional[bool] = None
    reporter: List[str] = Field(default_factory=lambda: ["json"])

    def wants_concurrency(self, settings: RunnerSettings) -> bool:
        """Return True when suites should be fanned out to worker processes."""
        if self.test_worker:
            return False
        if self.parallel is False:
            return False
        if len(self.env) > 1:
            return True
        return bool(self.parallel) or settings.test_workers.enabled
