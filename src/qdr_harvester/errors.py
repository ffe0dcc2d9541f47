from __future__ import annotations


class HarvesterError(Exception):
    """Base class for errors raised by the harvester."""


class ConfigError(HarvesterError):
    """Invalid options, filters or registry contents."""


class FatalProcessError(HarvesterError):
    """An error that must stop the whole run.

    Anything below this class means progress tracking can no longer be
    trusted, so continuing would silently lose work.
    """


class CheckpointStoreError(FatalProcessError):
    pass


class OutputUnavailableError(FatalProcessError):
    pass


__all__ = [
    "CheckpointStoreError",
    "ConfigError",
    "FatalProcessError",
    "HarvesterError",
    "OutputUnavailableError",
]
