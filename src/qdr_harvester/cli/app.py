from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import typer

from qdr_harvester.errors import ConfigError, FatalProcessError
from qdr_harvester.log_utils import configure_logging, write_jsonl
from qdr_harvester.models import RunSummary
from qdr_harvester.ndjson_tools import merge_country_files, write_snapshot
from qdr_harvester.providers.base import ProviderContext
from qdr_harvester.providers.europass.provider import (
    EuropassLayout,
    reset_scope,
    search_status,
)
from qdr_harvester.providers.registry import (
    ProviderEntry,
    register_default_providers,
    registry,
)
from qdr_harvester.storage import read_json

app = typer.Typer(
    help="Resumable, rate-limited harvester for the Europass qualification register",
)


def _ctx(provider: str, out_root: Path, **options: Any) -> ProviderContext:
    # Avoid double-appending the provider segment if the caller already
    # supplied it (e.g. --out-root out/europass).
    base = out_root
    if base.name.lower() != provider.lower():
        base = base / provider
    ctx = ProviderContext(name=provider, out_dir=base.resolve())
    ctx.options.update({key: value for key, value in options.items() if value is not None})
    return ctx


def build_ctx(provider: str, out_root: Path, **options: Any) -> ProviderContext:
    """Public wrapper for building ProviderContext used by the CLI."""

    return _ctx(provider, out_root, **options)


def _ensure_providers(names: Iterable[str]) -> list[ProviderEntry]:
    register_default_providers()
    entries: list[ProviderEntry] = []
    for name in names:
        entries.append(registry.entry(name))
    return entries


def _report(summary: RunSummary) -> None:
    for outcome in summary.outcomes:
        if outcome.completed:
            continue
        typer.echo(f"  paused  {outcome.scope}: {outcome.error or outcome.state.value}")
    typer.echo(
        f"{len(summary.completed)}/{len(summary.outcomes)} scopes completed, "
        f"{summary.total_items} items"
        + (" (interrupted)" if summary.interrupted else "")
    )


def _execute(run_fn: Callable[[], RunSummary]) -> None:
    """Run a crawl and translate its result into the process exit code."""

    try:
        summary = run_fn()
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except FatalProcessError as exc:
        typer.echo(f"Fatal error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt as exc:
        typer.echo("Interrupted", err=True)
        raise typer.Exit(code=130) from exc
    _report(summary)
    raise typer.Exit(code=summary.exit_code)


def _plugin(provider: str, mode: str) -> Any:
    register_default_providers()
    try:
        return registry.require(provider, mode)
    except (KeyError, ConfigError) as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def search(
    provider: str = typer.Argument("europass", help="Provider slug"),
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    country: list[str] = typer.Option(
        None, help="ISO3 country filter (multi or comma list; env QDR_COUNTRY)"
    ),
    level: list[int] = typer.Option(None, help="EQF level filter (multi)"),
    record_type: str | None = typer.Option(
        None, "--type", help="qualification or learning-opportunity"
    ),
    by_level: bool = typer.Option(False, help="Crawl per level only, ignoring countries"),
    page_size: int | None = typer.Option(None, help="Records per page (default 10)"),
    max_pages: int | None = typer.Option(None, help="Page ceiling per scope"),
    max_rps: int | None = typer.Option(None, help="Request rate cap (env QDR_MAX_RPS)"),
    concurrency: int | None = typer.Option(
        None, help="Scopes crawled in parallel (env QDR_CONCURRENCY)"
    ),
    user_agent: str | None = typer.Option(None, help="User-Agent (env QDR_USER_AGENT)"),
    snapshot: bool = typer.Option(False, help="Write <scope>.json when a scope completes"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Page through the search API for every (country, level) scope."""

    configure_logging(verbose)
    plugin = _plugin(provider, "search")
    ctx = build_ctx(
        provider,
        out_root,
        countries=country or None,
        levels=level or None,
        record_type=record_type,
        by_level=by_level,
        page_size=page_size,
        max_pages=max_pages,
        max_rps=max_rps,
        scope_concurrency=concurrency,
        user_agent=user_agent,
        snapshot=snapshot,
    )
    _execute(lambda: plugin.search(ctx))


@app.command()
def details(
    provider: str = typer.Argument("europass", help="Provider slug"),
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    country: list[str] = typer.Option(
        None, help="ISO3 country filter (default: every countryFiles/*.ndjson)"
    ),
    record_type: str | None = typer.Option(
        None, "--type", help="qualification or learning-opportunity"
    ),
    direct: bool = typer.Option(False, help="GET each record URI instead of the detail API"),
    data_dir: str | None = typer.Option(None, help="Output folder name under out-root"),
    max_rps: int | None = typer.Option(None, help="Request rate cap (default 20)"),
    concurrency: int | None = typer.Option(
        None, help="Detail requests in flight per scope (default 100)"
    ),
    user_agent: str | None = typer.Option(None, help="User-Agent (env QDR_USER_AGENT)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Fetch the detail document for every URI in countryFiles/<ISO3>.ndjson."""

    configure_logging(verbose)
    plugin = _plugin(provider, "details")
    ctx = build_ctx(
        provider,
        out_root,
        countries=country or None,
        record_type=record_type,
        direct=direct,
        data_dir=data_dir,
        max_rps=max_rps,
        request_concurrency=concurrency,
        user_agent=user_agent,
    )
    _execute(lambda: plugin.details(ctx))


@app.command()
def deep(
    provider: str = typer.Argument("europass", help="Provider slug"),
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    scope: list[str] = typer.Option(None, help="Index names to scrape (default: all)"),
    input_dir: Path | None = typer.Option(
        None, help="Folder holding *.index.json URI lists (default: <out>/files)"
    ),
    record_type: str | None = typer.Option(
        None, "--type", help="qualification or learning-opportunity"
    ),
    direct: bool = typer.Option(False, help="GET each record URI instead of the detail API"),
    data_dir: str | None = typer.Option(None, help="Output folder name under out-root"),
    errors_dir: str | None = typer.Option(None, help="Error folder name under out-root"),
    max_rps: int | None = typer.Option(None, help="Request rate cap (default 20)"),
    concurrency: int | None = typer.Option(
        None, help="Detail requests in flight per scope (default 100)"
    ),
    user_agent: str | None = typer.Option(None, help="User-Agent (env QDR_USER_AGENT)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Resolve every URI of the *.index.json lists into per-record files."""

    configure_logging(verbose)
    plugin = _plugin(provider, "deep")
    ctx = build_ctx(
        provider,
        out_root,
        scopes=scope or None,
        input_dir=input_dir,
        record_type=record_type,
        direct=direct,
        data_dir=data_dir,
        errors_dir=errors_dir,
        max_rps=max_rps,
        request_concurrency=concurrency,
        user_agent=user_agent,
    )
    _execute(lambda: plugin.deep(ctx))


@app.command()
def merge(
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    country: list[str] = typer.Option(None, help="ISO3 country filter (multi)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Concatenate <ISO3>_eqf<n>.ndjson files into countryFiles/<ISO3>.ndjson."""

    configure_logging(verbose)
    layout = EuropassLayout(build_ctx("europass", out_root).out_dir)
    totals = merge_country_files(layout.files_dir, layout.country_dir, country or None)
    if not totals:
        typer.echo(f"No <ISO3>_eqf<n>.ndjson files in {layout.files_dir}")
        return
    for name, count in totals.items():
        typer.echo(f"{name}: {count} records")
    typer.echo(f"Total: {sum(totals.values())} records across {len(totals)} countries")


@app.command()
def snapshot(
    scope: str = typer.Argument(..., help="Scope name, e.g. DEU_eqf4 or eqf4"),
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
) -> None:
    """Regenerate files/<scope>.json from files/<scope>.ndjson."""

    configure_logging(False)
    layout = EuropassLayout(build_ctx("europass", out_root).out_dir)
    source = layout.files_dir / f"{scope}.ndjson"
    if not source.exists():
        typer.echo(f"No such file: {source}", err=True)
        raise typer.Exit(code=1)
    meta = read_json(layout.meta_path)
    if not isinstance(meta, dict):
        meta = {}
    offset = int((meta.get(scope) or {}).get("offset") or 0)
    saved = write_snapshot(source, layout.files_dir / f"{scope}.json", scope, offset)
    typer.echo(f"Wrote {saved} records to {layout.files_dir / f'{scope}.json'}")


@app.command()
def status(
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    export: Path | None = typer.Option(None, help="Also write one JSONL row per scope here"),
) -> None:
    """Show per-scope search progress from the checkpoint document."""

    configure_logging(False)
    report = search_status(build_ctx("europass", out_root).out_dir)
    if export is not None:
        write_jsonl(export, report["scopes"])
    for row in report["scopes"]:
        flag = "done" if row["completed"] else row["status"]
        typer.echo(
            f"{row['scope']:<12} {flag:<9} offset={row['offset']:<7} "
            f"items={row['totalItems']:<7} pages={row['totalPages']}"
            + (" [forced]" if row["forced"] else "")
        )
    typer.echo(
        f"Completed {report['completed']}/{report['total']} scopes, "
        f"{report['items']} items"
    )
    for paused in report["paused"]:
        typer.echo(f"  paused {paused['scope']} at offset {paused['offset']}: {paused['error']}")


@app.command()
def reset(
    scope: str = typer.Option(..., help="Scope whose checkpoint is dropped"),
    out_root: Path = typer.Option(Path("out"), help="Root output directory"),
    kind: str = typer.Option("search", help="search, details or deep"),
) -> None:
    """Drop one scope's checkpoint; the next run restarts it from offset 0."""

    configure_logging(False)
    try:
        removed = reset_scope(build_ctx("europass", out_root).out_dir, scope, kind=kind)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except FatalProcessError as exc:
        typer.echo(f"Fatal error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if not removed:
        typer.echo(f"No {kind} checkpoint for {scope}")
        raise typer.Exit(code=1)
    typer.echo(f"Reset {kind} checkpoint for {scope}")


@app.command("providers")
def providers() -> None:
    """List registered providers and capabilities."""

    entries = _ensure_providers(registry.available() or ["europass"])
    for entry in entries:
        caps = entry.info.capabilities
        typer.echo(
            " - {name}: {title} | search={search} details={details} "
            "deep={deep} direct={direct}".format(
                name=entry.info.name,
                title=entry.info.title,
                search=caps.supports_search,
                details=caps.supports_details,
                deep=caps.supports_deep,
                direct=caps.supports_direct,
            )
        )


def run() -> None:
    app()


__all__ = [
    "app",
    "build_ctx",
    "deep",
    "details",
    "merge",
    "providers",
    "reset",
    "run",
    "search",
    "snapshot",
    "status",
]


if __name__ == "__main__":
    run()
