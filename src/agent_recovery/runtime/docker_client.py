"""Docker-backed ContainerRuntimeClient.

DockerRuntimeClient is the single point of contact with the Docker daemon.
Every HTTP call is bounded by the client's API timeout.  In-container exec
calls are additionally bounded by the liveness timeout: each one runs on its
own daemon thread, so an exec stuck in a hung container never delays the
liveness checks of other containers.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from agent_recovery.models.recovery import Failed, Outcome, Success, TimedOut
from agent_recovery.models.runtime import (
    ContainerRef,
    ContainerSummary,
    RecreateSpec,
    RuntimeStatus,
)
from agent_recovery.runtime.client import (
    ContainerNotFoundError,
    RuntimeClientError,
    RuntimeErrorKind,
    exact_name_pattern,
)

logger = logging.getLogger(__name__)

# Docker reports "never" as the zero time.
_ZERO_TIME_PREFIX = "0001-01-01"

# RFC 3339 with up to nanoseconds and trailing zeros trimmed; datetime keeps
# exactly microseconds.
_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse a Docker timestamp, returning ``None`` for empty or zero times."""
    if not value or value.startswith(_ZERO_TIME_PREFIX):
        return None
    normalized = _FRACTION_RE.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), value
    ).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        logger.debug("Unparseable Docker timestamp '%s'", value)
        return None


def summarize_stats(stats: dict) -> dict[str, float]:
    """Reduce a one-shot ``/stats`` document to the figures ``docker stats`` shows.

    CPU percent is computed the way the Docker CLI does it, from the delta
    against ``precpu_stats``.  Memory excludes the page cache.  Keys are
    omitted when the daemon did not report the underlying numbers (e.g. for
    a stopped container).
    """
    usage: dict[str, float] = {}

    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if cpu.get("system_cpu_usage") and system_delta > 0 and cpu_delta >= 0:
        online = cpu.get("online_cpus") or len(
            (cpu.get("cpu_usage") or {}).get("percpu_usage") or []
        ) or 1
        usage["cpu_percent"] = round(cpu_delta / system_delta * online * 100.0, 2)

    memory = stats.get("memory_stats") or {}
    if memory.get("usage") is not None:
        detail = memory.get("stats") or {}
        # cgroup v2 reports inactive_file, cgroup v1 reports cache
        cache = detail.get("inactive_file", detail.get("cache", 0))
        used = max(memory["usage"] - cache, 0)
        usage["memory_bytes"] = float(used)
        limit = memory.get("limit")
        if limit:
            usage["memory_limit_bytes"] = float(limit)
            usage["memory_percent"] = round(used / limit * 100.0, 2)

    return usage


class DockerRuntimeClient:
    """ContainerRuntimeClient over the Docker SDK.

    Args:
        base_url: Daemon URL (e.g. ``"unix:///var/run/docker.sock"`` or
            ``"tcp://nas.local:2376"``).  ``None`` reads the environment.
        api_timeout: Timeout in seconds for every Docker API call.

    Raises:
        DockerException: If the daemon is not running or not accessible.
    """

    def __init__(self, base_url: str | None = None, api_timeout: int = 60) -> None:
        if base_url is None:
            self._client = docker.from_env(timeout=api_timeout)
        else:
            self._client = docker.DockerClient(base_url=base_url, timeout=api_timeout)
        self._api_timeout = api_timeout
        # Verify connectivity
        self._client.ping()
        logger.info("DockerRuntimeClient connected to Docker daemon")

    @classmethod
    def from_client(cls, client: docker.DockerClient, api_timeout: int = 60) -> DockerRuntimeClient:
        """Wrap an existing Docker client without pinging the daemon."""
        instance = cls.__new__(cls)
        instance._client = client
        instance._api_timeout = api_timeout
        return instance

    def close(self) -> None:
        self._client.close()

    def daemon_responsive(self) -> bool:
        """Return True if the daemon answers a ping."""
        try:
            return bool(self._client.ping())
        except (DockerException, requests.exceptions.RequestException) as exc:
            logger.warning("Docker daemon did not answer ping: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def list(self, name_pattern: str) -> list[ContainerSummary]:
        try:
            containers = self._client.containers.list(
                all=True,
                filters={"name": name_pattern},
                ignore_removed=True,
            )
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise _to_runtime_error(exc, name_pattern) from exc
        return [self._summarize(container) for container in containers]

    def inspect_status(self, container_id: str) -> RuntimeStatus:
        container = self._get(container_id)
        state = container.attrs.get("State", {})
        return RuntimeStatus(
            running=bool(state.get("Running")),
            exit_code=state.get("ExitCode"),
            started_at=parse_docker_time(state.get("StartedAt")),
            finished_at=parse_docker_time(state.get("FinishedAt")),
            pid=state.get("Pid") or None,
        )

    def exec_liveness(
        self, container_id: str, timeout: float, command: list[str] | None = None
    ) -> bool:
        cmd = command or ["echo", "responsive"]
        result: dict[str, object] = {}
        worker = threading.Thread(
            target=self._exec_into,
            args=(container_id, cmd, result),
            name=f"liveness-{container_id[:12]}",
            daemon=True,
        )
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            # The thread is abandoned; the API timeout eventually ends it.
            logger.warning(
                "Exec %s in '%s' did not finish within %.1fs",
                cmd,
                container_id[:12],
                timeout,
            )
            return False
        if "error" in result:
            logger.warning("Exec %s in '%s' failed: %s", cmd, container_id[:12], result["error"])
            return False
        return result.get("exit_code") == 0

    def resource_usage(self, container_id: str) -> dict[str, float]:
        try:
            stats = self._client.containers.get(container_id).stats(stream=False)
        except (DockerException, requests.exceptions.RequestException) as exc:
            logger.debug("No stats for '%s': %s", container_id[:12], exc)
            return {}
        if not isinstance(stats, dict):
            return {}
        return summarize_stats(stats)

    def tail_logs(self, container_id: str, lines: int) -> list[str]:
        try:
            raw = self._client.containers.get(container_id).logs(
                stdout=True, stderr=True, tail=lines
            )
        except (DockerException, requests.exceptions.RequestException) as exc:
            logger.debug("No logs for '%s': %s", container_id[:12], exc)
            return []
        if not raw:
            return []
        return raw.decode("utf-8", errors="replace").splitlines()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def stop(self, container_id: str, timeout: int) -> Outcome:
        return self._call(
            "stop", container_id, lambda c: c.stop(timeout=timeout), timeout=timeout
        )

    def kill(self, container_id: str, signal: str) -> Outcome:
        return self._call("kill", container_id, lambda c: c.kill(signal=signal))

    def remove(self, container_id: str, force: bool) -> Outcome:
        return self._call("remove", container_id, lambda c: c.remove(force=force))

    def start(self, container_id: str) -> Outcome:
        return self._call("start", container_id, lambda c: c.start())

    def run(self, spec: RecreateSpec) -> ContainerRef:
        kwargs: dict[str, object] = {
            "name": spec.name,
            "detach": True,
            "environment": dict(spec.environment),
            "volumes": [f"{host}:{target}" for host, target in spec.volumes.items()],
            "cap_add": list(spec.cap_add) or None,
            "security_opt": list(spec.security_opt) or None,
            "labels": dict(spec.labels),
        }
        if spec.network_mode:
            kwargs["network_mode"] = spec.network_mode
        if spec.restart_policy:
            kwargs["restart_policy"] = {"Name": spec.restart_policy}
        if spec.command:
            kwargs["command"] = list(spec.command)

        logger.info("Creating container '%s' from image '%s'", spec.name, spec.image)
        try:
            container = self._client.containers.run(spec.image, **kwargs)
        except (DockerException, requests.exceptions.RequestException) as exc:
            error = _to_runtime_error(exc, spec.name)
            if isinstance(error, ContainerNotFoundError):
                # ImageNotFound: the image could not be pulled
                error = RuntimeClientError(RuntimeErrorKind.TRANSPORT, str(exc))
            raise error from exc
        logger.info("Created container '%s' (%s)", spec.name, container.short_id)
        return ContainerRef(
            name_pattern=exact_name_pattern(spec.name),
            runtime_handle=container.id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, container_id: str):
        try:
            return self._client.containers.get(container_id)
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise _to_runtime_error(exc, container_id) from exc

    def _exec_into(self, container_id: str, cmd: list[str], result: dict[str, object]) -> None:
        try:
            exec_result = self._get(container_id).exec_run(cmd, stdout=True, stderr=True)
            exit_code = exec_result.exit_code
            result["exit_code"] = exit_code if exit_code is not None else -1
        except Exception as exc:  # noqa: BLE001
            result["error"] = exc

    def _call(self, verb: str, container_id: str, fn, timeout: int | None = None) -> Outcome:
        """Look up the container and apply ``fn`` to it, mapping timeouts and conflicts."""
        try:
            fn(self._client.containers.get(container_id))
        except requests.exceptions.Timeout:
            logger.warning("Docker %s of '%s' timed out", verb, container_id[:12])
            after = self._api_timeout + (timeout or 0)
            return TimedOut(after_seconds=float(after))
        except (DockerException, requests.exceptions.RequestException) as exc:
            error = _to_runtime_error(exc, container_id)
            if isinstance(error, ContainerNotFoundError):
                raise error from exc
            if error.kind is RuntimeErrorKind.CONFLICT:
                # e.g. "removal already in progress", "container is not running"
                logger.warning("Docker %s of '%s' refused: %s", verb, container_id[:12], exc)
                return Failed(reason=error.message)
            raise error from exc
        logger.info("Docker %s of '%s' succeeded", verb, container_id[:12])
        return Success()

    @staticmethod
    def _summarize(container) -> ContainerSummary:
        attrs = container.attrs
        state = attrs.get("State", {})
        if isinstance(state, str):
            # Sparse listings carry the state as a plain string.
            state = {"Status": state, "Running": state == "running"}
        config = attrs.get("Config") or {}
        return ContainerSummary(
            id=container.id,
            name=(attrs.get("Name") or container.name or "").lstrip("/"),
            image=config.get("Image", ""),
            running=bool(state.get("Running")),
            status=state.get("Status", ""),
            exit_code=state.get("ExitCode"),
            started_at=parse_docker_time(state.get("StartedAt")),
            finished_at=parse_docker_time(state.get("FinishedAt")),
        )


def _to_runtime_error(exc: Exception, target: str) -> RuntimeClientError:
    """Map Docker SDK and transport exceptions onto the runtime error taxonomy."""
    if isinstance(exc, NotFound):
        return ContainerNotFoundError(target)
    if isinstance(exc, APIError) and exc.status_code == 409:
        return RuntimeClientError(RuntimeErrorKind.CONFLICT, str(exc))
    return RuntimeClientError(RuntimeErrorKind.TRANSPORT, str(exc))
