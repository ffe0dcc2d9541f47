from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml  # type: ignore[import-untyped]

from qdr_harvester.errors import ConfigError


@dataclass
class RecordType:
    name: str
    detail_path: str
    description: str | None = None


@dataclass
class ScopeRegistry:
    """Catalogue of crawlable scopes for one search API."""

    provider: str
    search_url: str
    detail_base: str
    country_authority: str
    level_authority: str
    countries: list[str] = field(default_factory=list)
    levels: list[int] = field(default_factory=list)
    record_types: dict[str, RecordType] = field(default_factory=dict)
    default_type: str = "qualification"

    def record_type(self, name: str | None) -> RecordType:
        key = name or self.default_type
        if key not in self.record_types:
            known = ", ".join(sorted(self.record_types))
            raise ConfigError(f"Unknown record type {key!r} (known: {known})")
        return self.record_types[key]


def load_scope_registry(path: str | Path) -> ScopeRegistry:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read scope registry {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Scope registry {path} must be a mapping")

    types: dict[str, RecordType] = {}
    for name, cfg in (data.get("record_types") or {}).items():
        cfg = cfg or {}
        types[name] = RecordType(
            name=name,
            detail_path=str(cfg.get("detail_path", name)),
            description=cfg.get("description"),
        )

    try:
        levels = [int(level) for level in data.get("levels", [])]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Scope registry {path}: levels must be integers") from exc

    return ScopeRegistry(
        provider=str(data.get("provider", "")),
        search_url=str(data.get("search_url", "")),
        detail_base=str(data.get("detail_base", "")),
        country_authority=str(data.get("country_authority", "")),
        level_authority=str(data.get("level_authority", "")),
        countries=[str(c).upper() for c in data.get("countries", [])],
        levels=levels,
        record_types=types,
        default_type=str(data.get("default_type", "qualification")),
    )


__all__ = ["RecordType", "ScopeRegistry", "load_scope_registry"]
