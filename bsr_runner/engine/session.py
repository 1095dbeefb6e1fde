"""Run session state for one coordinator invocation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional

from bsr_runner.engine.contracts import ResultAggregator
from bsr_runner.engine.state import RunState, RunStateMachine


@dataclass
class RunSession:
    """Top-level unit of one invocation, owned by the coordinator."""

    full_paths: tuple[str, ...]
    reporter: ResultAggregator
    worklist: List[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    publish_report: bool = True
    exit_code: int = 0
    state_machine: RunStateMachine = field(default_factory=RunStateMachine)

    @classmethod
    def create(cls, paths: List[str], reporter: ResultAggregator) -> "RunSession":
        return cls(full_paths=tuple(paths), reporter=reporter, worklist=list(paths))

    @property
    def state(self) -> RunState:
        return self.state_machine.state

    def transition(self, state: RunState, reason: Optional[str] = None) -> None:
        self.state_machine.transition(state, reason=reason)

    def next_path(self) -> Optional[str]:
        """Pop the front of the worklist, or None when it is exhausted."""
        if not self.worklist:
            return None
        return self.worklist.pop(0)
