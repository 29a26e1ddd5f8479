"""Client settings: YAML file, env interpolation, deep merge, redaction.

Provides:
- ClientSettings with defaults for every tunable
- {env:VAR} interpolation restricted to an allowlist
- Deep merge of file values over defaults
- Redaction for safe logging (tokens never reach the log)

File layout (.chatstream.yaml):

    chatstream:
      base_url: http://127.0.0.1:3001
      api_token: "{env:CHATSTREAM_API_TOKEN}"
      default_model: google/gemini-2.5-flash-lite-preview-06-17
      throttle_ms: 50
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("chatstream.config")

DEFAULT_CONFIG_PATH = ".chatstream.yaml"
CONFIG_SECTION = "chatstream"

REDACTED = "***REDACTED***"

_ENV_ALLOWLIST = [
    re.compile(r"^CHATSTREAM_"),
]

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)

# Environment overrides applied after the file
_ENV_OVERRIDES = {
    "CHATSTREAM_BASE_URL": "base_url",
    "CHATSTREAM_API_TOKEN": "api_token",
    "CHATSTREAM_MODEL": "default_model",
}


@dataclass(frozen=True)
class ClientSettings:
    base_url: str = "http://127.0.0.1:3001"
    api_token: str = ""
    default_model: str = "google/gemini-2.5-flash-lite-preview-06-17"
    default_title: str = "New Chat"
    throttle_ms: int = 50
    poll_interval_ms: int = 10
    queue_size: int = 256
    reconcile_window: int = 2
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 60000
    total_timeout_ms: int = 300000
    max_connections: int = 20
    fallback_delay_scale: float = 1.0

    @property
    def throttle_interval(self) -> float:
        return self.throttle_ms / 1000.0

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    def redacted(self) -> Dict[str, Any]:
        return redact_config(asdict(self))


# ── Interpolation ─────────────────────────────────────────────────────


def _check_env_allowed(var_name: str) -> bool:
    return any(pattern.search(var_name) for pattern in _ENV_ALLOWLIST)


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR} tokens in a string value."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^CHATSTREAM_.*"
            )
        resolved = os.environ.get(var_name)
        if resolved is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return resolved

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy with every string value interpolated, recursively."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, str):
            result[key] = interpolate_value(value)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value)
        else:
            result[key] = value
    return result


# ── Merge / redaction ─────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win; inputs untouched."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config safe for display: secrets and interpolated values masked."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = ", ".join(f"env:{name}" for name in _INTERP_RE.findall(value))
            result[key] = f"{REDACTED} (from {sources})"
        elif _SENSITIVE_KEY_RE.search(key) and value:
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        key: (REDACTED if _SENSITIVE_KEY_RE.search(key) else value)
        for key, value in headers.items()
    }


# ── Loading ───────────────────────────────────────────────────────────


def _read_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    section = document.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise ValueError(f"'{CONFIG_SECTION}' section in {path} must be a mapping")
    return section


def _coerce(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Keep known keys and convert them to the field types."""
    known = {f.name: f for f in fields(ClientSettings)}
    defaults = asdict(ClientSettings())
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown config key '%s'", key)
            continue
        if value is None:
            # A key with no value keeps its default
            continue
        expected = type(defaults[key])
        try:
            values[key] = expected(value)
        except (TypeError, ValueError):
            raise ValueError(f"Config key '{key}' must be {expected.__name__}, got {value!r}")
    return values


def load_settings(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ClientSettings:
    """Load settings: defaults <- YAML file <- environment <- overrides.

    A missing file is only an error when a path was given explicitly.
    """
    merged: Dict[str, Any] = asdict(ClientSettings())

    config_path = Path(path or DEFAULT_CONFIG_PATH)
    if config_path.exists():
        merged = deep_merge(merged, _read_file(config_path))
        logger.debug("Loaded config from %s", config_path)
    elif path is not None:
        raise ValueError(f"Config not found: {path}")

    for env_var, key in _ENV_OVERRIDES.items():
        env_value = os.environ.get(env_var)
        if env_value:
            merged[key] = env_value

    if overrides:
        merged = deep_merge(merged, overrides)

    settings = ClientSettings(**_coerce(interpolate_config(merged)))
    _validate(settings)
    logger.debug("Client settings: %s", settings.redacted())
    return settings


def _validate(settings: ClientSettings) -> None:
    errors: List[str] = []
    if not settings.base_url:
        errors.append("'base_url' is required")
    if settings.throttle_ms < 0:
        errors.append("'throttle_ms' must be >= 0")
    if settings.poll_interval_ms <= 0:
        errors.append("'poll_interval_ms' must be > 0")
    if settings.queue_size < 1:
        errors.append("'queue_size' must be >= 1")
    if settings.reconcile_window < 2:
        errors.append("'reconcile_window' must be >= 2")
    if settings.fallback_delay_scale < 0:
        errors.append("'fallback_delay_scale' must be >= 0")
    if errors:
        raise ValueError("Invalid settings: " + "; ".join(errors))
