"""Registry of crawlable scopes (countries, levels, record types)."""

from qdr_harvester.registry.registry import (
    RecordType,
    ScopeRegistry,
    load_scope_registry,
)

__all__ = [
    "RecordType",
    "ScopeRegistry",
    "load_scope_registry",
]
