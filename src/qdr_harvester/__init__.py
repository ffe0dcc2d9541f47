"""qdr-harvester primary package."""

from . import (
    crawler,
    log_utils,
    models,
    providers,
    registry,
)

__all__ = [
    "crawler",
    "log_utils",
    "models",
    "providers",
    "registry",
]
