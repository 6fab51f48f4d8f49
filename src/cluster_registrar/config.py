"""Config file loading and auto-discovery for cluster-registrar.

Searches for ``cluster-registrar.yaml`` in the current directory and
parent directories, parses it, and resolves all relative paths against
the config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from cluster_registrar.models import FEATURE_MODULE

CONFIG_FILENAME = "cluster-registrar.yaml"

BACKENDS = ("file", "kubernetes")


class ConfigError(Exception):
    """Raised when a config file is malformed."""


@dataclass(frozen=True)
class RegistrarConfig:
    """Parsed cluster-registrar configuration."""

    config_path: Path | None = None
    namespace: str | None = None
    requeue_seconds: float = 5.0
    resync_seconds: float = 60.0
    max_backoff_seconds: float = 300.0
    enabled_registration: bool = False
    feature_module: str = FEATURE_MODULE
    backend: str = "file"
    inventory: str | None = None
    record_store: str | None = None
    journal: str | None = None
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    registrator: str | None = None
    configurator: str | None = None


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``cluster-registrar.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> RegistrarConfig:
    """Load a cluster-registrar config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``RegistrarConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return RegistrarConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> RegistrarConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    base = config_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if val is None:
            return None
        return str((base / val).resolve())

    def _seconds(key: str, default: float) -> float:
        val = data.get(key, default)
        try:
            seconds = float(val)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"'{key}' must be a number in {config_path}, got {val!r}") from e
        if seconds <= 0:
            raise ConfigError(f"'{key}' must be positive in {config_path}, got {val!r}")
        return seconds

    def _flag(key: str) -> bool:
        val = data.get(key, False)
        if not isinstance(val, bool):
            raise ConfigError(f"'{key}' must be true or false in {config_path}, got {val!r}")
        return val

    backend = data.get("backend", "file")
    if backend not in BACKENDS:
        msg = f"'backend' must be one of {', '.join(BACKENDS)} in {config_path}, got {backend!r}"
        raise ConfigError(msg)

    return RegistrarConfig(
        config_path=config_path,
        namespace=data.get("namespace"),
        requeue_seconds=_seconds("requeue_seconds", 5.0),
        resync_seconds=_seconds("resync_seconds", 60.0),
        max_backoff_seconds=_seconds("max_backoff_seconds", 300.0),
        enabled_registration=_flag("enabled_registration"),
        feature_module=data.get("feature_module", FEATURE_MODULE),
        backend=backend,
        inventory=_resolve("inventory"),
        record_store=_resolve("record_store"),
        journal=_resolve("journal"),
        kubeconfig=_resolve("kubeconfig"),
        context=data.get("context"),
        in_cluster=_flag("in_cluster"),
        registrator=data.get("registrator"),
        configurator=data.get("configurator"),
    )

