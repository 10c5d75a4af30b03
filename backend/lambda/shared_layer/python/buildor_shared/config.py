"""buildor_shared.config: environment and parameter-store configuration.

Handlers read plain settings with ``os.environ.get`` at import time. The
helpers here cover the cases that need more: required variables, integer
parsing, and values published to SSM Parameter Store (the infrastructure
stack publishes the CodeBuild project name there).
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from buildor_shared.aws_clients import _get_ssm
from buildor_shared.errors import MissingConfigError

logger = logging.getLogger(__name__)

_parameter_cache: Dict[str, str] = {}


def _load_env_var(name: str, default: Optional[str] = None) -> str:
    """Return an env var, or ``default``; raise if neither is set."""
    value = os.environ.get(name, "")
    if value:
        return value
    if default is not None:
        return default
    raise MissingConfigError(f"Environment variable {name} is not set")


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[WARNING] %s=%r is not an integer; using %d", name, raw, default)
        return default


def _log_level(default: str = "INFO") -> int:
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", default).upper())
    return level if isinstance(level, int) else logging.INFO


def _ssm_parameter(parameter_name: str) -> str:
    """Fetch (and cache for the container lifetime) an SSM string parameter."""
    cached = _parameter_cache.get(parameter_name)
    if cached is not None:
        return cached
    try:
        resp = _get_ssm().get_parameter(Name=parameter_name)
    except (BotoCoreError, ClientError) as exc:
        raise MissingConfigError(
            f"Unable to read SSM parameter {parameter_name}: {exc}"
        ) from exc
    value = str(resp.get("Parameter", {}).get("Value") or "")
    if not value:
        raise MissingConfigError(f"SSM parameter {parameter_name} is empty")
    _parameter_cache[parameter_name] = value
    return value


def _resolve_parameter(value: str, parameter_name: str) -> str:
    """Prefer a literal value; fall back to the named SSM parameter."""
    if value:
        return value
    if not parameter_name:
        raise MissingConfigError("No value and no SSM parameter name configured")
    return _ssm_parameter(parameter_name)
