"""
Command-line interface for browser-suite-runner.

Builds the run coordinator and the process lifecycle guard, binds them and
drives one run; the process exit code reflects the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from bsr_common.errors import BSRError, ConfigurationError
from bsr_common.logging import configure_logging
from bsr_runner.engine.contracts import HostProcess
from bsr_runner.engine.coordinator import RunCoordinator
from bsr_runner.engine.guard import ProcessLifecycleGuard
from bsr_runner.engine.process_events import ProcessEvents, SystemProcess
from bsr_runner.models.settings import RunnerSettings, RunOptions, resolve_config_path
from bsr_runner.services.instances import ManagedInstances
from bsr_runner.services.suite_loader import collect_modules, resolve_suite_factory

logger = logging.getLogger(__name__)

app = typer.Typer(help="Run browser test suites and report one verdict.", no_args_is_help=True)


@app.callback()
def entry(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
    log_json: Optional[bool] = typer.Option(None, "--log-json/--no-log-json", help="Emit JSON log lines."),
) -> None:
    """Global options shared by every command."""
    configure_logging(debug=debug, json=log_json, force=True)


def load_settings(config_path: Optional[Path]) -> tuple[RunnerSettings, Optional[Path]]:
    """Load settings from the resolved config file, or defaults when none exists."""
    resolved = resolve_config_path(config_path)
    if resolved is None:
        return RunnerSettings(), None
    if not resolved.exists():
        raise ConfigurationError(f"Config file not found: {resolved}", context={"path": resolved})
    return RunnerSettings.load(resolved), resolved


async def execute(
    coordinator: RunCoordinator,
    guard: ProcessLifecycleGuard,
    modules: List[str],
) -> int:
    """Run the suites with process events routed to the guard."""
    loop = asyncio.get_running_loop()
    with ProcessEvents(guard, loop):
        if coordinator.options.wants_concurrency(coordinator.settings):
            exit_code = await coordinator.run_concurrent(coordinator.options.env, modules)
        else:
            exit_code = await coordinator.run(modules)
        await guard.settled()
    return exit_code


def build_runtime(
    settings: RunnerSettings,
    options: RunOptions,
    *,
    host: Optional[HostProcess] = None,
) -> tuple[RunCoordinator, ProcessLifecycleGuard]:
    """Construct the coordinator and the guard and bind them together."""
    instances = ManagedInstances()
    factory = resolve_suite_factory(settings.suite_engine)
    coordinator = RunCoordinator(
        settings,
        options,
        suite_factory=factory,
        instances=instances,
    )
    guard = ProcessLifecycleGuard(host or SystemProcess(), instances=instances)
    guard.bind_coordinator(coordinator)
    return coordinator, guard


@app.command("run")
def run_command(
    paths: List[Path] = typer.Argument(None, help="Test modules or folders to run."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Runner settings JSON file."),
    env: List[str] = typer.Option(["default"], "--env", "-e", help="Test environment(s) to run against."),
    parallel: Optional[bool] = typer.Option(
        None, "--parallel/--serial", help="Force or disable worker processes."
    ),
    reporter: List[str] = typer.Option(["json"], "--reporter", "-r", help="Report formats to persist."),
    test_worker: bool = typer.Option(False, "--test-worker", hidden=True),
) -> None:
    """Run test suites and exit with 0 only when everything passed."""
    try:
        settings, resolved_config = load_settings(config)
    except (BSRError, ValueError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(2)

    options = RunOptions(
        config=resolved_config,
        env=list(env),
        test_worker=test_worker,
        parallel=parallel,
        reporter=list(reporter),
    )
    modules = collect_modules(paths or settings.src_folders)
    if not modules:
        logger.warning("No test modules found")

    try:
        coordinator, guard = build_runtime(settings, options)
    except ConfigurationError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(2)

    exit_code = asyncio.run(execute(coordinator, guard, modules))
    guard.on_normal_exit(exit_code)


def main() -> None:
    """Invoke the Typer application."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
