"""CLI entry points for qdr-harvester."""

import importlib
from typing import Any, cast

_cli_mod = importlib.import_module("qdr_harvester.cli.app")
app = cast(Any, _cli_mod).app
deep = cast(Any, _cli_mod).deep
details = cast(Any, _cli_mod).details
merge = cast(Any, _cli_mod).merge
reset = cast(Any, _cli_mod).reset
run = cast(Any, _cli_mod).run
search = cast(Any, _cli_mod).search
snapshot = cast(Any, _cli_mod).snapshot
status = cast(Any, _cli_mod).status

__all__ = [
    "app",
    "deep",
    "details",
    "merge",
    "reset",
    "run",
    "search",
    "snapshot",
    "status",
]
