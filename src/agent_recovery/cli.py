"""Typer CLI entry point for agent-recovery."""

import asyncio
import json
import re
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import TypeVar

import typer
from dotenv import load_dotenv

from agent_recovery.config import ConfigError, Settings

load_dotenv()

app = typer.Typer(
    name="agent-recovery",
    help="Health reconciliation and escalating recovery for agent containers",
    no_args_is_help=True,
)

T = TypeVar("T")

# Exit code for failures that happen before any recovery run starts.
EXIT_MISCONFIGURED = 4

_DURATION_RE = re.compile(r"^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+(?:\.\d+)?)s?)?$")


def parse_duration(value: str) -> float:
    """Parse ``90``, ``90s``, ``5m``, ``1h`` or ``1h30m`` into seconds.

    Raises:
        ConfigError: If the value is not a duration.
    """
    match = _DURATION_RE.match(value.strip())
    if not value.strip() or match is None or not any(match.groupdict().values()):
        raise ConfigError(f"Invalid duration '{value}' (expected e.g. 90s, 5m, 1h30m)")
    hours = int(match["h"] or 0)
    minutes = int(match["m"] or 0)
    seconds = float(match["s"] or 0)
    return hours * 3600 + minutes * 60 + seconds


def compile_pattern(name_pattern: str) -> re.Pattern[str]:
    """Compile ``--name-pattern`` the way the runtime's name filter reads it.

    Raises:
        ConfigError: If the pattern is not a valid regular expression.
    """
    try:
        return re.compile(name_pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid --name-pattern '{name_pattern}': {exc}") from exc


def _load_settings(config: Path | None) -> Settings:
    return Settings.from_yaml(config) if config is not None else Settings()


def _load_recreate_spec(path: Path | None):
    from agent_recovery.models.runtime import RecreateSpec

    if path is None:
        return None
    try:
        return RecreateSpec.from_yaml(path)
    except Exception as exc:
        raise ConfigError(f"Invalid recreate spec '{path}': {exc}") from exc


def apply_overrides(
    settings: Settings,
    *,
    max_attempts: int | None = None,
    deadline: str | None = None,
    non_destructive: bool = False,
    treat_missing_as_success: bool = False,
) -> Settings:
    """Return a copy of ``settings`` with command-line flags applied on top."""
    recovery_updates: dict[str, object] = {}
    if max_attempts is not None:
        if max_attempts < 1:
            raise ConfigError("--max-attempts must be at least 1")
        recovery_updates["max_attempts"] = max_attempts
    if deadline is not None:
        recovery_updates["deadline_seconds"] = parse_duration(deadline)
    if treat_missing_as_success:
        recovery_updates["treat_missing_as_success"] = True

    policy = settings.policy
    if non_destructive:
        policy = policy.model_copy(update={"non_destructive": True})

    return settings.model_copy(
        update={
            "recovery": settings.recovery.model_copy(update=recovery_updates),
            "policy": policy,
        }
    )


def run_cancellable(fn: Callable[[], T], cancel: threading.Event) -> T:
    """Run ``fn`` in a worker thread; Ctrl-C sets ``cancel`` instead of interrupting it.

    The controller observes ``cancel`` between iterations, so an in-flight
    runtime call always finishes (or times out) and gets recorded.
    """
    from loguru import logger

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="recovery") as pool:
        future = pool.submit(fn)
        while True:
            try:
                return future.result(timeout=0.2)
            except FutureTimeoutError:
                continue
            except KeyboardInterrupt:
                if not cancel.is_set():
                    logger.warning("Cancellation requested; finishing the current step")
                cancel.set()


_config_option = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to settings YAML (runtime, probe, recovery, policy)",
    exists=True,
    dir_okay=False,
)

_pattern_option = typer.Option(
    ...,
    "--name-pattern",
    "-n",
    help="Container name filter (regular expression, as the runtime applies it)",
)


@app.command()
def recover(
    name_pattern: str = _pattern_option,
    max_attempts: int = typer.Option(None, "--max-attempts", help="Maximum remediation attempts"),
    deadline: str = typer.Option(None, "--deadline", help="Wall-clock budget, e.g. 90s, 5m, 1h30m"),
    recreate_spec: Path = typer.Option(
        None,
        "--recreate-spec",
        help="YAML spec used to recreate the container ($VAR values read from the environment)",
        exists=True,
        dir_okay=False,
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Probe and plan only; print the action that would be taken"
    ),
    non_destructive: bool = typer.Option(
        False, "--non-destructive", help="Never force-kill, force-remove or recreate"
    ),
    config: Path = _config_option,
    each: bool = typer.Option(
        False, "--each", help="Recover every matching container with its own controller"
    ),
    treat_missing_as_success: bool = typer.Option(
        False,
        "--treat-missing-as-success",
        help="Exit 0 when no container matches instead of reporting misconfiguration",
    ),
    preflight: Path = typer.Option(
        None,
        "--preflight",
        help="Validate the agent config directory before recovering",
        file_okay=False,
    ),
    log_dir: Path = typer.Option(None, "--log-dir", help="Write a JSONL log of the run here"),
    json_output: bool = typer.Option(True, "--json/--no-json", help="Print the report as JSON on stdout"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug-level console logging"),
) -> None:
    """Recover the containers matching a name pattern.

    Exit codes: 0 recovered, 1 budget exhausted, 2 deadline exceeded,
    3 aborted, 4 misconfigured or unresolvable, 5 dry run found work to do.

    Example:
        agent-recovery recover -n dd-agent --recreate-spec recreate.yaml
    """
    from docker.errors import DockerException
    from loguru import logger
    from rich.console import Console

    from agent_recovery.display import ErrorDisplay, JsonReportSink, ReportDisplay
    from agent_recovery.preflight import validate_agent_config
    from agent_recovery.recovery import RecoveryController, recover_all
    from agent_recovery.recovery.logging import setup_logging
    from agent_recovery.runtime import DockerRuntimeClient

    console = Console(stderr=True)
    error_display = ErrorDisplay(console)
    log_file = log_dir / "recovery.jsonl" if log_dir is not None else None
    setup_logging(console=console, log_file=log_file, verbose=verbose)

    try:
        pattern = compile_pattern(name_pattern)
        settings = apply_overrides(
            _load_settings(config),
            max_attempts=max_attempts,
            deadline=deadline,
            non_destructive=non_destructive,
            treat_missing_as_success=treat_missing_as_success,
        )
        spec = _load_recreate_spec(recreate_spec)
    except ConfigError as e:
        error_display.show_error(*ErrorDisplay.format_error(e))
        raise typer.Exit(code=EXIT_MISCONFIGURED) from None

    if spec is not None and not pattern.search(spec.name):
        logger.warning(
            "Recreate spec name '{}' does not match pattern '{}'; a recreated "
            "container will not be found by later probes",
            spec.name,
            name_pattern,
        )

    if preflight is not None:
        for issue in validate_agent_config(preflight):
            logger.warning("Preflight: {}: {}", issue.path, issue.message)

    try:
        client = DockerRuntimeClient(settings.runtime.base_url, settings.runtime.api_timeout)
    except DockerException as e:
        error_display.show_error(*ErrorDisplay.format_error(e))
        raise typer.Exit(code=EXIT_MISCONFIGURED) from None

    cancel = threading.Event()
    try:
        if each:
            reports = run_cancellable(
                lambda: asyncio.run(
                    recover_all(
                        client,
                        name_pattern,
                        settings=settings,
                        recreate_spec=spec,
                        dry_run=dry_run,
                        cancel=cancel,
                    )
                ),
                cancel,
            )
        else:
            controller = RecoveryController(
                client,
                name_pattern,
                settings=settings,
                recreate_spec=spec,
                dry_run=dry_run,
                cancel=cancel,
            )
            reports = [run_cancellable(controller.run, cancel)]
    finally:
        client.close()

    display = ReportDisplay(console)
    json_sink = JsonReportSink()
    for report in reports:
        display.emit(report)
        if json_output:
            json_sink.emit(report)

    raise typer.Exit(code=max(report.exit_code for report in reports))


@app.command()
def probe(
    name_pattern: str = _pattern_option,
    config: Path = _config_option,
    json_output: bool = typer.Option(True, "--json/--no-json", help="Print observations as JSON on stdout"),
) -> None:
    """Classify every matching container without changing anything.

    Exits 0 when at least one matching container is healthy, else 1.
    """
    from docker.errors import DockerException
    from rich.console import Console

    from agent_recovery.display import ErrorDisplay, ReportDisplay
    from agent_recovery.models.recovery import Condition, Observation
    from agent_recovery.models.runtime import ContainerRef
    from agent_recovery.recovery import HealthProbe
    from agent_recovery.recovery.logging import setup_logging
    from agent_recovery.runtime import DockerRuntimeClient, RuntimeClientError, exact_name_pattern

    console = Console(stderr=True)
    error_display = ErrorDisplay(console)
    setup_logging(console=console)

    try:
        compile_pattern(name_pattern)
        settings = _load_settings(config)
        client = DockerRuntimeClient(settings.runtime.base_url, settings.runtime.api_timeout)
    except (ConfigError, DockerException) as e:
        error_display.show_error(*ErrorDisplay.format_error(e))
        raise typer.Exit(code=EXIT_MISCONFIGURED) from None

    try:
        if not client.daemon_responsive():
            console.print("[yellow]Docker daemon is not answering pings[/yellow]")
        health = HealthProbe(client, settings.probe)
        try:
            matches = client.list(name_pattern)
        except RuntimeClientError as e:
            error_display.show_error(*ErrorDisplay.format_error(e))
            raise typer.Exit(code=1) from None
        observations = [
            health.classify(ContainerRef(name_pattern=exact_name_pattern(summary.name)))
            for summary in matches
        ] or [Observation(condition=Condition.MISSING)]
        usage = {
            o.container_id: client.resource_usage(o.container_id)
            for o in observations
            if o.container_id is not None
        }
    finally:
        client.close()

    ReportDisplay(console).show_observations(name_pattern, observations, usage)
    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        **o.model_dump(mode="json"),
                        "resource_usage": usage.get(o.container_id or "", {}),
                    }
                    for o in observations
                ]
            )
        )

    healthy = any(o.condition is Condition.HEALTHY for o in observations)
    raise typer.Exit(code=0 if healthy else 1)


@app.command("validate-config")
def validate_config(
    config_dir: Path = typer.Argument(
        ...,
        help="Agent configuration directory (holding datadog.yaml and conf.d/)",
    ),
) -> None:
    """Check agent config YAML syntax and host-incompatible features.

    Exits 0 when no issues are found, else 1.
    """
    from rich.console import Console

    from agent_recovery.display import ErrorDisplay
    from agent_recovery.preflight import validate_agent_config

    console = Console(stderr=True)
    issues = validate_agent_config(config_dir)
    ErrorDisplay(console).show_config_issues(str(config_dir), issues)
    raise typer.Exit(code=1 if issues else 0)


if __name__ == "__main__":
    app()
