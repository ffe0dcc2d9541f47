from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, cast

from qdr_harvester.errors import ConfigError
from qdr_harvester.providers.base import ProviderPlugin


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_search: bool = False
    supports_details: bool = False
    supports_deep: bool = False
    supports_direct: bool = False

    def supports(self, mode: str) -> bool:
        return bool(getattr(self, f"supports_{mode}", False))


@dataclass(frozen=True)
class ProviderInfo:
    name: str
    title: str
    description: str
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    # environment variables the provider reads as option fallbacks
    env_vars: list[str] = field(default_factory=list)
    scope_registry: str | None = None
    homepage: str | None = None


@dataclass
class ProviderEntry:
    plugin: ProviderPlugin
    info: ProviderInfo


class ProviderRegistry:
    """Named crawl providers and what each of them can run."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderEntry] = {}

    def register(
        self,
        name: str,
        plugin: ProviderPlugin,
        info: ProviderInfo | None = None,
    ) -> None:
        resolved = info or getattr(plugin, "provider_info", None)
        if resolved is None:
            raise ConfigError(f"Provider '{name}' has no provider_info")
        self._providers[name] = ProviderEntry(plugin=plugin, info=resolved)

    def entry(self, name: str) -> ProviderEntry:
        try:
            return self._providers[name]
        except KeyError:
            known = ", ".join(self.available()) or "none"
            raise KeyError(f"Provider '{name}' is not registered (known: {known})") from None

    def get(self, name: str) -> ProviderPlugin:
        return self.entry(name).plugin

    def info(self, name: str) -> ProviderInfo:
        return self.entry(name).info

    def require(self, name: str, mode: str) -> ProviderPlugin:
        """Return the plugin for ``name`` if it can run ``mode``."""

        entry = self.entry(name)
        if not entry.info.capabilities.supports(mode):
            raise ConfigError(f"Provider '{name}' does not support {mode}")
        return entry.plugin

    def available(self) -> list[str]:
        return sorted(self._providers)

    def entries(self) -> list[ProviderEntry]:
        return [self._providers[name] for name in self.available()]


registry = ProviderRegistry()


def register_default_providers() -> None:
    """Register built-in providers (idempotent)."""

    from qdr_harvester.providers.europass.provider import EuropassProvider

    if "europass" not in registry.available():
        registry.register("europass", cast(ProviderPlugin, EuropassProvider()))


__all__ = [
    "ProviderCapabilities",
    "ProviderEntry",
    "ProviderInfo",
    "ProviderRegistry",
    "register_default_providers",
    "registry",
]
