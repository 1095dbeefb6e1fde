"""Result data exchanged between suites, workers and the global reporter."""

from __future__ import annotations

import traceback
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bsr_common.errors import BSRError


class SuiteResults(BaseModel):
    """Results exported by a single test suite."""

    module_path: str = Field(...)
    name: str = Field(default="")
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    time: float = Field(default=0.0, ge=0)
    tests: Dict[str, str] = Field(default_factory=dict)
    error_messages: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.errors > 0

    @property
    def key(self) -> str:
        return self.name or self.module_path


@dataclass
class UncaughtErrorRecord:
    """An error that escaped suite-level handling, with a diagnostic hint."""

    error_type: str
    message: str
    detailed_err: Optional[str] = None
    stack: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, err: BaseException) -> "UncaughtErrorRecord":
        stack = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        context = err.context if isinstance(err, BSRError) else {}
        return cls(
            error_type=type(err).__name__,
            message=str(err),
            detailed_err=getattr(err, "detailed_err", None),
            stack=stack,
            context=context,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkerResult:
    """Outcome of one worker process."""

    label: str
    modules: List[str]
    exit_code: Optional[int] = None
    reported: int = 0

    @property
    def crashed(self) -> bool:
        """True when the worker reported nothing for the modules it was given."""
        return bool(self.modules) and self.reported == 0

    @property
    def has_failures(self) -> bool:
        return self.exit_code != 0 or self.crashed


@dataclass
class ReportSummary:
    """Totals computed over all folded suite results."""

    suites: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    uncaught: int = 0
    elapsed: float = 0.0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.errors > 0 or self.uncaught > 0
