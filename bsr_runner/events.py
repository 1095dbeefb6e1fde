"""Structured events exchanged between worker processes and the parent."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from typing import Any

EVENT_TOKEN = "BSR_EVENT"
WORKER_LABEL_ENV = "BSR_WORKER_LABEL"

SUITE_FINISHED = "suite_finished"
WORKER_CRASHED = "worker_crashed"
WORKER_EXITED = "worker_exited"


@dataclass
class WorkerEvent:
    """A structured event emitted by (or about) a worker process."""

    type: str
    worker: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventEmitter:
    """Dispatch WorkerEvent instances."""

    def emit(self, event: WorkerEvent) -> None:
        raise NotImplementedError


class StdoutEmitter(EventEmitter):
    """Emit event markers to stdout for parsing by the parent process."""

    def emit(self, event: WorkerEvent) -> None:
        if not event.worker:
            event.worker = os.environ.get(WORKER_LABEL_ENV, "")
        print(f"{EVENT_TOKEN} {event.to_json()}", flush=True)


def extract_event_data(line: str, token: str = EVENT_TOKEN) -> dict[str, Any] | None:
    """Extract an event JSON payload from a line of worker output."""
    token_idx = line.find(token)
    if token_idx == -1:
        return None

    payload = line[token_idx + len(token):].strip()
    start = payload.find("{")
    if start == -1:
        return None

    # Match the closing brace so trailing output on the same line is ignored.
    depth = 0
    in_string = False
    escaped = False
    end: int | None = None
    for idx, ch in enumerate(payload[start:], start):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = idx + 1
                break
    if end is None:
        return None

    try:
        data = json.loads(payload[start:end])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
