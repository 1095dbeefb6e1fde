"""Resolve the suite engine and collect test modules."""

from __future__ import annotations

import importlib
import importlib.metadata
import logging
from pathlib import Path
from typing import Iterable, List

from bsr_common.errors import ConfigurationError
from bsr_runner.engine.contracts import SuiteFactory

logger = logging.getLogger(__name__)
ENTRYPOINT_GROUP = "browser_suite_runner.engines"


def _load_entrypoint_engine(name: str) -> SuiteFactory | None:
    try:
        eps = importlib.metadata.entry_points().select(group=ENTRYPOINT_GROUP, name=name)
    except Exception as exc:
        logger.debug("Failed to read entry points for group %s: %s", ENTRYPOINT_GROUP, exc)
        return None
    for entry_point in eps:
        return entry_point.load()
    return None


def resolve_suite_factory(import_path: str | None) -> SuiteFactory:
    """
    Return the suite factory named by ``module:attr`` or by an engine entry point.

    Raises:
        ConfigurationError: when no engine is configured or it cannot be loaded.
    """
    if not import_path:
        raise ConfigurationError(
            "No suite engine configured; set 'suite_engine' to 'module:attr'"
        )
    if ":" not in import_path:
        factory = _load_entrypoint_engine(import_path)
        if factory is None:
            raise ConfigurationError(
                f"Unknown suite engine '{import_path}'",
                context={"group": ENTRYPOINT_GROUP},
            )
        return factory

    module_name, _, attr = import_path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(
            f"Cannot import suite engine module '{module_name}'", cause=exc
        ) from exc
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(
            f"Suite engine '{import_path}' is not callable",
            context={"module": module_name, "attr": attr},
        )
    return factory


def collect_modules(paths: Iterable[Path]) -> List[str]:
    """Expand directories into sorted test modules; explicit files keep their order."""
    modules: List[str] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            found = sorted(
                p for p in path.rglob("*.py") if not p.name.startswith("_")
            )
            modules.extend(str(p) for p in found)
        elif path.exists():
            modules.append(str(path))
        else:
            logger.warning("Skipping missing test path: %s", path)
    return modules
