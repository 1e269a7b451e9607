from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
import os

import yaml

LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class ConfigError(ValueError):
    """Raised when operator configuration is malformed."""


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OperatorConfig:
    namespace: str = os.getenv("ARANGO_OPERATOR_NAMESPACE", "default")
    kubeconfig_path: str | None = os.getenv("ARANGO_OPERATOR_KUBECONFIG") or None
    context: str | None = os.getenv("ARANGO_OPERATOR_CONTEXT") or None
    in_cluster: bool = _env_flag("ARANGO_OPERATOR_IN_CLUSTER", "true")
    request_timeout_seconds: int = int(os.getenv("ARANGO_OPERATOR_REQUEST_TIMEOUT_SECONDS", "30"))
    log_level: str = os.getenv("ARANGO_OPERATOR_LOG_LEVEL", "INFO")
    log_json: bool = _env_flag("ARANGO_OPERATOR_LOG_JSON", "false")


def load_config(path: Path | None = None, *, base: OperatorConfig | None = None) -> OperatorConfig:
    """Build the config the controller driver passes to `runtime.build_runtime`."""
    config = base or OperatorConfig()
    if path is not None:
        config = replace(config, **_read_overrides(path))
    validate_config(config)
    return config


def validate_config(config: OperatorConfig) -> None:
    if not isinstance(config.request_timeout_seconds, int) or config.request_timeout_seconds <= 0:
        raise ConfigError("request_timeout_seconds must be positive")
    if not isinstance(config.log_level, str) or config.log_level.upper() not in LOG_LEVELS:
        raise ConfigError(f"unknown log_level '{config.log_level}'; expected one of {', '.join(sorted(LOG_LEVELS))}")
    if not isinstance(config.namespace, str) or not config.namespace.strip():
        raise ConfigError("namespace must not be empty")


def _read_overrides(path: Path) -> dict[str, Any]:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Unable to read operator config from '{path}': {error}") from error

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Operator config in '{path}' must be a mapping")

    known = {item.name for item in fields(OperatorConfig)}
    unknown = sorted(set(document) - known)
    if unknown:
        raise ConfigError(f"Unknown operator config keys in '{path}': {', '.join(unknown)}")
    return document
