"""Provider exports for qdr-harvester."""

from typing import TYPE_CHECKING, Any

from .base import ProviderContext, ProviderPlugin
from .registry import (
    ProviderCapabilities,
    ProviderEntry,
    ProviderInfo,
    ProviderRegistry,
    register_default_providers,
    registry,
)

if TYPE_CHECKING:
    from .europass.provider import EuropassProvider


def __getattr__(name: str) -> Any:
    if name == "EuropassProvider":
        from .europass.provider import EuropassProvider

        return EuropassProvider
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(list(globals().keys()) + ["EuropassProvider"])


__all__ = [
    "ProviderContext",
    "ProviderPlugin",
    "ProviderRegistry",
    "ProviderCapabilities",
    "ProviderEntry",
    "ProviderInfo",
    "register_default_providers",
    "registry",
    "EuropassProvider",
]
