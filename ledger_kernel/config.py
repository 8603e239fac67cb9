"""
Runtime Settings (``ledger_kernel.config``).

Responsibility
--------------
Resolve the processor's runtime settings from three sources, lowest to
highest precedence:

1. built-in defaults (``Settings`` field defaults),
2. an optional YAML file -- path passed explicitly or taken from
   ``LEDGER_RECURRING_CONFIG``,
3. environment variables.

YAML keys are the ``Settings`` field names.  Environment variables:

=================================  ========================
Variable                           Field
=================================  ========================
``DATABASE_URL``                   ``database_url``
``CRON_SECRET``                    ``cron_secret``
``RECURRING_BACKLOG_POLICY``       ``backlog_policy``
``RECURRING_MAX_CATCH_UP``         ``max_catch_up``
``RECURRING_MAX_WORKERS``          ``max_workers``
``RECURRING_PASS_TIMEOUT_SECONDS`` ``pass_timeout_seconds``
``RECURRING_RECENT_LIMIT``         ``recent_limit``
``LEDGER_LOG_LEVEL``               ``log_level``
``LEDGER_SQL_ECHO``                ``sql_echo``
=================================  ========================

Failure modes
-------------
* Missing YAML file  -> ``ConfigurationError``.
* Malformed YAML or a non-mapping document  -> ``ConfigurationError``.
* A value that cannot be coerced to the field's type  -> ``ConfigurationError``
  naming the key.
* ``Settings.require()`` on unset keys  -> ``ConfigurationError`` naming
  every missing key.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from ledger_kernel.exceptions import ConfigurationError

CONFIG_PATH_ENV = "LEDGER_RECURRING_CONFIG"

_ENV_KEYS: dict[str, str] = {
    "DATABASE_URL": "database_url",
    "CRON_SECRET": "cron_secret",
    "RECURRING_BACKLOG_POLICY": "backlog_policy",
    "RECURRING_MAX_CATCH_UP": "max_catch_up",
    "RECURRING_MAX_WORKERS": "max_workers",
    "RECURRING_PASS_TIMEOUT_SECONDS": "pass_timeout_seconds",
    "RECURRING_RECENT_LIMIT": "recent_limit",
    "LEDGER_LOG_LEVEL": "log_level",
    "LEDGER_SQL_ECHO": "sql_echo",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings.  Immutable once loaded."""

    database_url: str | None = None
    cron_secret: str | None = None
    backlog_policy: str = "single_step"
    max_catch_up: int = 366
    max_workers: int = 1
    pass_timeout_seconds: float | None = None
    recent_limit: int = 10
    log_level: str = "INFO"
    sql_echo: bool = False

    def require(self, *keys: str) -> None:
        """Raise ConfigurationError if any of ``keys`` is unset or empty."""
        missing = tuple(k for k in keys if not getattr(self, k))
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                keys=missing,
            )


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML settings file; an empty file yields an empty dict."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(
            f"Config file not found: {path}", keys=(CONFIG_PATH_ENV,)
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Config file is not valid YAML: {path}: {exc}", keys=(CONFIG_PATH_ENV,)
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file must contain a mapping: {path}", keys=(CONFIG_PATH_ENV,)
        )
    return data


def _coerce(name: str, raw: Any) -> Any:
    """Coerce a YAML or environment value to the type of field ``name``."""
    if raw is None:
        return None
    try:
        if name in ("max_catch_up", "max_workers", "recent_limit"):
            if isinstance(raw, bool):
                raise ValueError("boolean is not an integer")
            value = int(raw)
            if value < 1:
                raise ValueError("must be >= 1")
            return value
        if name == "pass_timeout_seconds":
            if raw == "":
                return None
            value = float(raw)
            if value <= 0:
                raise ValueError("must be > 0")
            return value
        if name == "sql_echo":
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError("expected a boolean")
        if name == "log_level":
            return str(raw).upper()
        return str(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r} ({exc})", keys=(name,)
        ) from exc


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Resolve Settings from defaults, an optional YAML file, and the environment.

    Args:
        config_path: Explicit YAML path.  Falls back to ``LEDGER_RECURRING_CONFIG``.
        environ: Environment mapping (defaults to ``os.environ``).
    """
    env = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: dict[str, Any] = {}

    path = config_path or env.get(CONFIG_PATH_ENV)
    if path:
        data = load_yaml_file(Path(path))
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                keys=tuple(unknown),
            )
        for key, raw in data.items():
            values[key] = _coerce(key, raw)

    for env_key, name in _ENV_KEYS.items():
        if env_key in env:
            values[name] = _coerce(name, env[env_key])

    return replace(Settings(), **values)
