"""Environment-based configuration.

Values are read once at startup (``.env`` is honored through python-dotenv)
and kept in a frozen dataclass for the lifetime of the process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

from zotero_manager.errors import ConfigurationError

DEFAULT_BASE_URL = "https://api.zotero.org"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class ZoteroConfig:
    api_key: str
    user_id: str | None = None
    group_id: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    max_retries: int = 3
    cache_enabled: bool = True
    cache_ttl: float = 300.0
    cache_max_entries: int = 1000
    log_level: str = "INFO"

    def summary(self) -> dict[str, object]:
        """Non-secret view used by health reports."""
        return {
            "library": f"user:{self.user_id}" if self.user_id else f"group:{self.group_id}",
            "baseUrl": self.base_url,
            "timeout": self.timeout,
            "maxRetries": self.max_retries,
            "cacheEnabled": self.cache_enabled,
            "cacheTTL": self.cache_ttl,
            "cacheMax": self.cache_max_entries,
            "logLevel": self.log_level,
        }


def _parse_bool(raw: str) -> bool | None:
    v = raw.strip().lower()
    if v in ("true", "1", "yes", "on"):
        return True
    if v in ("false", "0", "no", "off"):
        return False
    return None


def load_config(env: Mapping[str, str] | None = None, *, dotenv: bool = True) -> ZoteroConfig:
    """Build a :class:`ZoteroConfig` from ``env`` (defaults to ``os.environ``).

    Raises :class:`ConfigurationError` listing every invalid setting.
    """
    if env is None:
        if dotenv:
            load_dotenv(override=False)
        env = os.environ

    problems: list[str] = []

    def get(name: str) -> str | None:
        value = env.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def number(name: str, default: float, minimum: float, maximum: float | None = None) -> float:
        raw = get(name)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            problems.append(f"{name}: expected a number, got {raw!r}")
            return default
        if value < minimum or (maximum is not None and value > maximum):
            bound = f">= {minimum:g}" if maximum is None else f"between {minimum:g} and {maximum:g}"
            problems.append(f"{name}: must be {bound}, got {raw}")
            return default
        return value

    api_key = get("ZOTERO_API_KEY")
    if not api_key:
        problems.append("ZOTERO_API_KEY is required")

    user_id = get("ZOTERO_USER_ID")
    group_id = get("ZOTERO_GROUP_ID")
    if not user_id and not group_id:
        problems.append("Either ZOTERO_USER_ID or ZOTERO_GROUP_ID must be provided")
    elif user_id and group_id:
        problems.append("Set only one of ZOTERO_USER_ID or ZOTERO_GROUP_ID")

    base_url = (get("ZOTERO_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
    parsed = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        problems.append(f"ZOTERO_BASE_URL: not a valid URL: {base_url!r}")

    timeout = number("ZOTERO_REQUEST_TIMEOUT", 30.0, 1.0)
    max_retries = int(number("ZOTERO_MAX_RETRIES", 3, 0, 10))
    cache_ttl = number("ZOTERO_CACHE_TTL", 300.0, 0.0)
    cache_max = int(number("ZOTERO_CACHE_MAX", 1000, 0))

    cache_enabled = True
    raw_enabled = get("ZOTERO_CACHE_ENABLED")
    if raw_enabled is not None:
        parsed_bool = _parse_bool(raw_enabled)
        if parsed_bool is None:
            problems.append(f"ZOTERO_CACHE_ENABLED: expected true/false, got {raw_enabled!r}")
        else:
            cache_enabled = parsed_bool

    log_level = (get("LOG_LEVEL") or "INFO").upper()
    if log_level == "WARN":
        log_level = "WARNING"
    if log_level not in _LOG_LEVELS:
        problems.append(f"LOG_LEVEL: expected one of {', '.join(_LOG_LEVELS)}, got {log_level!r}")
        log_level = "INFO"

    if problems:
        raise ConfigurationError("Configuration validation failed:\n  " + "\n  ".join(problems))

    return ZoteroConfig(
        api_key=api_key or "",
        user_id=user_id,
        group_id=group_id,
        base_url=base_url,
        timeout=timeout,
        max_retries=max_retries,
        cache_enabled=cache_enabled,
        cache_ttl=cache_ttl,
        cache_max_entries=cache_max,
        log_level=log_level,
    )
