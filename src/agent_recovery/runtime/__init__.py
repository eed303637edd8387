"""Container runtime access: the client contract and its Docker implementation."""

from agent_recovery.runtime.client import (
    ContainerNotFoundError,
    ContainerRuntimeClient,
    RuntimeClientError,
    RuntimeErrorKind,
    exact_name_pattern,
)
from agent_recovery.runtime.docker_client import DockerRuntimeClient

__all__ = [
    "ContainerNotFoundError",
    "ContainerRuntimeClient",
    "DockerRuntimeClient",
    "RuntimeClientError",
    "RuntimeErrorKind",
    "exact_name_pattern",
]
