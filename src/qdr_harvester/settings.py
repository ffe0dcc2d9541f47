from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Mapping

from qdr_harvester.errors import ConfigError

DEFAULT_USER_AGENT = "qdr-harvester/0.1"

# Overrides applied on top of the dataclass defaults for each crawl kind.
SEARCH_DEFAULTS: dict[str, Any] = {
    "http_timeout": 45.0,
    "initial_backoff": 0.8,
    "max_rps": 3,
}
DETAIL_DEFAULTS: dict[str, Any] = {
    "http_timeout": 30.0,
    "initial_backoff": 0.4,
    "max_rps": 20,
    # each detail scope already runs request_concurrency requests
    "scope_concurrency": 1,
}

_ENV_OPTIONS: dict[str, str] = {
    "max_rps": "QDR_MAX_RPS",
    "scope_concurrency": "QDR_CONCURRENCY",
    "user_agent": "QDR_USER_AGENT",
}


@dataclass(frozen=True)
class CrawlSettings:
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout: float = 45.0
    max_retries: int = 3
    initial_backoff: float = 0.8
    jitter: float = 0.15
    max_rps: int = 3
    rate_interval: float = 1.0
    page_size: int = 10
    max_pages: int = 10_000
    max_malformed: int = 2
    scope_concurrency: int = 10
    request_concurrency: int = 100
    flush_interval: float = 3.0
    milestone_every: int = 100
    heartbeat_interval: float = 60.0
    stall_after: float = 300.0
    language: str = "en"
    api_version: str = "1.8"

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> CrawlSettings:
        """Build settings from CLI options, env fallbacks and kind defaults.

        Precedence: explicit option > environment variable > ``defaults`` >
        dataclass default. ``None`` option values count as unset.
        """

        values: dict[str, Any] = {}
        for fld in fields(cls):
            raw = options.get(fld.name)
            if raw is None and fld.name in _ENV_OPTIONS:
                raw = os.environ.get(_ENV_OPTIONS[fld.name]) or None
            if raw is None and defaults is not None:
                raw = defaults.get(fld.name)
            if raw is None:
                continue
            caster = type(fld.default)
            try:
                values[fld.name] = caster(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {fld.name}: {raw!r}") from exc
        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        positive = {
            "page_size": self.page_size,
            "max_pages": self.max_pages,
            "max_rps": self.max_rps,
            "scope_concurrency": self.scope_concurrency,
            "request_concurrency": self.request_concurrency,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive (got {value})")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.rate_interval <= 0:
            raise ConfigError("rate_interval must be positive")


__all__ = ["CrawlSettings", "DEFAULT_USER_AGENT", "DETAIL_DEFAULTS", "SEARCH_DEFAULTS"]
