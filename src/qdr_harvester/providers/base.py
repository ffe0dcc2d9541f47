from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from qdr_harvester.models import RunSummary


@dataclass
class ProviderContext:
    name: str
    out_dir: Path
    options: dict[str, Any] = field(default_factory=dict)


class ProviderPlugin(Protocol):
    def search(self, ctx: ProviderContext) -> RunSummary: ...

    def details(self, ctx: ProviderContext) -> RunSummary: ...

    def deep(self, ctx: ProviderContext) -> RunSummary: ...


__all__ = ["ProviderContext", "ProviderPlugin"]
