"""
Persistence context configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ConfigurationError


class FlushMode(str, Enum):
    AUTO = "auto"
    COMMIT = "commit"


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value for '{key}': {value!r}")


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer value for '{key}': {value!r}") from exc


def _parse_flush_mode(value: str, *, key: str) -> FlushMode:
    try:
        return FlushMode(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid flush mode for '{key}': {value!r}") from exc


def _parse_log_level(value: str, *, key: str) -> int:
    if value.strip().isdigit():
        return int(value)
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Invalid log level for '{key}': {value!r}")
    return level


@dataclass(frozen=True)
class ContextConfig:
    """
    Behaviour switches for persistence contexts.

    ``flush_mode``: ``AUTO`` flushes pending work before ``find_all`` queries,
    ``COMMIT`` only flushes on ``flush()`` / ``commit()``.
    ``enforce_single_owner``: reject calls from threads other than the creator.
    ``slow_call_ms``: storage calls at or above this duration log a warning.
    ``n_plus_one_threshold``: repeated reads before an N+1 warning.
    ``log_level``: optional level applied to the ``emberorm`` logger.
    """

    flush_mode: FlushMode = FlushMode.AUTO
    enforce_single_owner: bool = True
    slow_call_ms: int = 100
    n_plus_one_threshold: int = 5
    log_level: Optional[int] = None

    @classmethod
    def from_env(cls, prefix: str = "EMBERORM_", environ: Optional[Mapping[str, str]] = None) -> "ContextConfig":
        """
        Build a config from ``<prefix>FLUSH_MODE``, ``<prefix>ENFORCE_SINGLE_OWNER``,
        ``<prefix>SLOW_CALL_MS``, ``<prefix>N_PLUS_ONE_THRESHOLD`` and
        ``<prefix>LOG_LEVEL``. Unset variables keep their defaults.
        """

        env = os.environ if environ is None else environ
        parsers = {
            "flush_mode": _parse_flush_mode,
            "enforce_single_owner": _parse_bool,
            "slow_call_ms": _parse_int,
            "n_plus_one_threshold": _parse_int,
            "log_level": _parse_log_level,
        }
        values: dict[str, Any] = {}
        for name, parser in parsers.items():
            key = f"{prefix}{name.upper()}"
            raw = env.get(key)
            if raw is None or raw == "":
                continue
            values[name] = parser(raw, key=key)
        return cls(**values)
