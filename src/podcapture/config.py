"""
Agent configuration loading.

Layers, lowest precedence first:
  1. AgentConfig defaults
  2. YAML file (``--config`` or ``PODCAPTURE_CONFIG``)
  3. Environment (``NODE_NAME``, ``PODCAPTURE_CAPTURE_DIR``, ``KUBECONFIG``, ...)
  4. Explicit overrides (CLI options)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from .models import AgentConfig

logger = logging.getLogger("podcapture.config")

CONFIG_ENV = "PODCAPTURE_CONFIG"

ENV_FIELDS = {
    "NODE_NAME": "node_name",
    "PODCAPTURE_CAPTURE_DIR": "capture_dir",
    "PODCAPTURE_RESOLVER": "resolver",
    "PODCAPTURE_GRACE_PERIOD": "grace_period",
    "PODCAPTURE_ANNOTATION_KEY": "annotation_key",
    "KUBECONFIG": "kubeconfig",
}


def load_config_file(path: Optional[Path]) -> dict[str, Any]:
    """Read the YAML config layer.

    A missing file yields no settings. An unreadable or malformed file
    is logged and ignored, the other layers still apply.
    """
    if path is None:
        return {}
    path = Path(path).expanduser()
    if not path.exists():
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (yaml.YAMLError, OSError) as exc:
        logger.warning("Failed to load config %s: %s, using defaults", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, ignoring it", path)
        return {}
    try:
        AgentConfig(**data)
    except ValidationError as exc:
        logger.warning("Invalid config in %s: %s, using defaults", path, exc)
        return {}
    return data


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect settings from environment variables."""
    environ = os.environ if environ is None else environ
    return {
        field: environ[var]
        for var, field in ENV_FIELDS.items()
        if environ.get(var)
    }


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AgentConfig:
    """Build the effective AgentConfig.

    Args:
        path: YAML config file; defaults to ``$PODCAPTURE_CONFIG`` if set.
        overrides: Highest-precedence values; None entries are ignored.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated AgentConfig.

    Raises:
        pydantic.ValidationError: If the merged settings are invalid.
    """
    environ = os.environ if environ is None else environ
    if path is None and environ.get(CONFIG_ENV):
        path = Path(environ[CONFIG_ENV])

    data: dict[str, Any] = {}
    data.update(load_config_file(path))
    data.update(env_overrides(environ))
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return AgentConfig(**data)
