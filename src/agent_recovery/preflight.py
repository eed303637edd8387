"""Agent configuration checks run before (or independently of) recovery.

A Datadog Agent that crash-loops on a NAS is most often fed a config that
either does not parse or enables kernel-level features the host cannot
provide.  ``validate_agent_config`` reports both without modifying anything:

- every ``*.yaml`` in the config directory and every ``conf.d/*/*.yaml``
  must be valid YAML;
- ``datadog.yaml`` must explicitly disable ``system_probe_config`` and
  ``runtime_security_config``.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel

# Sections that must be present with ``enabled: false`` in datadog.yaml.
REQUIRED_DISABLED_SECTIONS = ("system_probe_config", "runtime_security_config")


class ConfigIssue(BaseModel):
    """A single problem found in an agent configuration tree."""

    path: str
    message: str
    severity: str = "error"  # "error" or "warning"


def validate_agent_config(config_dir: Path) -> list[ConfigIssue]:
    """Validate the agent configuration tree rooted at ``config_dir``.

    Args:
        config_dir: Directory holding ``datadog.yaml`` and ``conf.d/``.

    Returns:
        Issues found, in file order.  Empty when the tree is clean.
    """
    if not config_dir.is_dir():
        return [ConfigIssue(path=str(config_dir), message="configuration directory not found")]

    issues: list[ConfigIssue] = []
    files = sorted(config_dir.glob("*.yaml")) + sorted(config_dir.glob("conf.d/*/*.yaml"))
    for path in files:
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            issues.append(ConfigIssue(path=str(path), message=f"invalid YAML: {exc}"))
            continue
        if path.name == "datadog.yaml":
            issues.extend(_check_main_config(path, data))

    if not (config_dir / "datadog.yaml").exists():
        issues.append(
            ConfigIssue(
                path=str(config_dir / "datadog.yaml"),
                message="datadog.yaml is missing",
                severity="warning",
            )
        )
    return issues


def _check_main_config(path: Path, data: object) -> list[ConfigIssue]:
    if not isinstance(data, dict):
        return [ConfigIssue(path=str(path), message="datadog.yaml must be a mapping")]
    issues = []
    for section in REQUIRED_DISABLED_SECTIONS:
        value = data.get(section)
        if not isinstance(value, dict) or value.get("enabled") is not False:
            issues.append(
                ConfigIssue(
                    path=str(path),
                    message=f"{section}.enabled should be false on this host",
                    severity="warning",
                )
            )
    return issues
