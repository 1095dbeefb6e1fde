"""Shared helpers for browser-suite-runner."""

from bsr_common.errors import BSRError, RunnerError, SuiteInitError
from bsr_common.logging import configure_logging

__all__ = ["BSRError", "RunnerError", "SuiteInitError", "configure_logging"]
