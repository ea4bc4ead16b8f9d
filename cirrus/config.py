"""TOML-based workflow defaults.

Loads ~/.cirrus/defaults.toml (global) and cirrus.toml (project),
merges them, and resolves the defaults a Workflow starts from:

    [workflow]
    project = "my-project"
    zone = "us-central1-a"
    gcs_path = "gs://my-bucket/builds"
    step_timeout = 600

    [logging]
    level = "DEBUG"
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, TypeAlias

from cirrus.core.exceptions import ConfigurationError
from cirrus.logging import LogConfig

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cirrus" / "defaults.toml"
PROJECT_CONFIG_NAME = "cirrus.toml"

DEFAULT_ZONE = "us-central1-a"


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    """Resolved defaults for a workflow.

    Args:
        project: GCP project ID. Auto-detected from the environment or ADC.
        zone: Compute Engine zone. Default: us-central1-a.
        gcs_path: ``gs://bucket[/prefix]`` under which scratch data is kept.
            Default: ``gs://<project>-cirrus-bkt``.
        step_timeout: Seconds a step may run before it fails.
        serial_interval: Seconds between serial console polls.
        thread_pool_size: Worker threads for the blocking Google clients.
        log: Logging setup, or None to stay silent.
    """

    project: str
    zone: str = DEFAULT_ZONE
    gcs_path: str = ""
    step_timeout: float = 600.0
    serial_interval: float = 3.0
    thread_pool_size: int = 8
    log: LogConfig | None = None

    def __post_init__(self) -> None:
        if not self.gcs_path:
            object.__setattr__(self, "gcs_path", f"gs://{self.project}-cirrus-bkt")
        if not self.gcs_path.startswith("gs://"):
            raise ConfigurationError(f"gcs_path must start with gs://, got {self.gcs_path!r}")
        if self.step_timeout <= 0:
            raise ConfigurationError(f"step_timeout must be positive, got {self.step_timeout}")


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("workflow", {})
    return merged


def resolve_project(explicit: str | None) -> str:
    """Resolve GCP project: explicit > env > ADC."""
    if explicit:
        return explicit

    if env_project := os.environ.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := os.environ.get("GCLOUD_PROJECT"):
        return env_project

    try:
        import google.auth  # type: ignore[reportMissingImports]

        _, project = google.auth.default()
    except Exception as e:
        raise ConfigurationError(f"No GCP project found and ADC lookup failed: {e}") from e
    if project:
        return project

    raise ConfigurationError(
        "No GCP project found. Set GOOGLE_CLOUD_PROJECT, pass project=, "
        "or configure Application Default Credentials."
    )


def workflow_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    **overrides: Any,
) -> WorkflowConfig:
    """Build a WorkflowConfig from the TOML files, then explicit overrides."""
    raw = load_config(project_dir=project_dir, global_path=global_path)

    known = {f.name for f in fields(WorkflowConfig)} - {"log"}
    values = dict(raw["workflow"])
    if unknown := set(values) - known:
        raise ConfigurationError(f"Unknown [workflow] keys: {', '.join(sorted(unknown))}")
    values.update({k: v for k, v in overrides.items() if v is not None})
    values["project"] = resolve_project(values.get("project"))

    if raw_log := raw.get("logging"):
        values.setdefault("log", LogConfig(**raw_log))

    return WorkflowConfig(**values)
