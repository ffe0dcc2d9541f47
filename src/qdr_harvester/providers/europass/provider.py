from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import httpx

from qdr_harvester.crawler.checkpoint import CheckpointStore
from qdr_harvester.crawler.detail import DetailFetcher, UriSource, index_uris, ndjson_uris
from qdr_harvester.crawler.pagination import PageRequest, PaginationDriver, ScopePaths
from qdr_harvester.crawler.runner import CrawlRun
from qdr_harvester.crawler.sink import FilePerRecordSink, NdjsonSink
from qdr_harvester.errors import ConfigError, OutputUnavailableError
from qdr_harvester.log_utils import log_event
from qdr_harvester.models import (
    CheckpointEntry,
    DetailCheckpoint,
    DetailScope,
    RunSummary,
    Scope,
    record_identifier,
)
from qdr_harvester.ndjson_tools import write_snapshot
from qdr_harvester.providers.base import ProviderContext, ProviderPlugin
from qdr_harvester.providers.registry import ProviderCapabilities, ProviderInfo
from qdr_harvester.registry import ScopeRegistry, load_scope_registry
from qdr_harvester.settings import DETAIL_DEFAULTS, SEARCH_DEFAULTS, CrawlSettings

from .local_constants import (
    COUNTRY_FILES_DIRNAME,
    DEFAULT_DATA_DIRNAME,
    DEFAULT_ERRORS_DIRNAME,
    DEFAULT_HEADERS,
    EUROPASS_HOMEPAGE,
    EUROPASS_PROVIDER_ID,
    FILES_DIRNAME,
    LOGS_DIRNAME,
    META_DIRNAME,
    META_FILENAME,
    SORT_TYPE,
)

logger = logging.getLogger(__name__)


def _default_registry_path() -> Path:
    return Path(__file__).resolve().parents[2] / "registry" / "europass_scopes.yaml"


def uri_identifier(record: Any) -> str | None:
    """Dedup key for search results: the record URI, else the usual ids."""

    if isinstance(record, Mapping) and record.get("uri"):
        return str(record["uri"])
    return record_identifier(record)


def _split_list(value: Any) -> list[str]:
    """Flatten an option given as a comma list, a sequence, or both."""

    if value is None:
        return []
    items: Iterable[Any] = [value] if isinstance(value, (str, int)) else value
    parts: list[str] = []
    for item in items:
        parts.extend(part.strip() for part in str(item).split(",") if part.strip())
    return parts


def resolve_countries(registry: ScopeRegistry, requested: Any = None) -> list[str]:
    """Country filter from the option, else ``QDR_COUNTRY``, else all."""

    wanted = [c.upper() for c in _split_list(requested)]
    if not wanted:
        wanted = [c.upper() for c in _split_list(os.environ.get("QDR_COUNTRY"))]
    if not wanted:
        return list(registry.countries)
    unknown = sorted(set(wanted) - set(registry.countries))
    if unknown:
        raise ConfigError(f"Unknown country code(s): {', '.join(unknown)}")
    return [c for c in registry.countries if c in wanted]


def resolve_levels(registry: ScopeRegistry, requested: Any = None) -> list[int]:
    raw = _split_list(requested)
    if not raw:
        return list(registry.levels)
    try:
        wanted = {int(level) for level in raw}
    except ValueError as exc:
        raise ConfigError(f"EQF levels must be integers: {raw}") from exc
    unknown = sorted(wanted - set(registry.levels))
    if unknown:
        raise ConfigError(f"Unknown EQF level(s): {unknown}")
    return [level for level in registry.levels if level in wanted]


def enumerate_scopes(
    registry: ScopeRegistry,
    *,
    countries: Any = None,
    levels: Any = None,
    record_type: str | None = None,
    by_level: bool = False,
) -> list[Scope]:
    rtype = registry.record_type(record_type).name
    level_list = resolve_levels(registry, levels)
    if by_level:
        return [Scope(key=f"eqf{level}", record_type=rtype, level=level) for level in level_list]
    return [
        Scope(key=f"{country}_eqf{level}", record_type=rtype, country=country, level=level)
        for country in resolve_countries(registry, countries)
        for level in level_list
    ]


def search_request(
    registry: ScopeRegistry,
    settings: CrawlSettings,
    scope: Scope,
    offset: int,
    size: int,
) -> PageRequest:
    params: dict[str, Any] = {
        "keywords": "",
        "size": size,
        "from": offset,
        "sortType": SORT_TYPE,
        "language": settings.language,
        "type": scope.record_type,
    }
    if scope.country:
        params["location"] = f"{registry.country_authority}{scope.country}"
    if scope.level is not None:
        params["eqfLevel"] = f"{registry.level_authority}{scope.level}"
    params["version"] = settings.api_version
    return registry.search_url, params


def detail_request(
    registry: ScopeRegistry,
    settings: CrawlSettings,
    record_type: str | None,
    uri: str,
    *,
    direct: bool = False,
) -> PageRequest:
    if direct:
        return uri, {}
    path = registry.record_type(record_type).detail_path
    return (
        f"{registry.detail_base.rstrip('/')}/{path}",
        {"uri": uri, "language": settings.language, "version": settings.api_version},
    )


def build_client(settings: CrawlSettings, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    headers = dict(DEFAULT_HEADERS)
    headers["User-Agent"] = settings.user_agent
    pool_size = max(settings.scope_concurrency, settings.request_concurrency)
    return httpx.Client(
        headers=headers,
        timeout=settings.http_timeout,
        follow_redirects=True,
        limits=httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size),
        transport=transport,
    )


class EuropassLayout:
    """Where every artifact of a run lives under ``out_dir``."""

    def __init__(self, out_dir: Path, options: Mapping[str, Any] | None = None) -> None:
        opts = options or {}
        self.out_dir = out_dir
        self.meta_path = out_dir / META_FILENAME
        self.files_dir = out_dir / FILES_DIRNAME
        self.country_dir = out_dir / COUNTRY_FILES_DIRNAME
        self.meta_dir = out_dir / META_DIRNAME
        self.deep_meta_dir = out_dir / META_DIRNAME / "deep"
        self.logs_dir = out_dir / LOGS_DIRNAME
        self.data_dir = out_dir / str(opts.get("data_dir") or DEFAULT_DATA_DIRNAME)
        self.errors_dir = out_dir / str(opts.get("errors_dir") or DEFAULT_ERRORS_DIRNAME)
        input_dir = opts.get("input_dir")
        self.deep_input_dir = Path(input_dir) if input_dir else self.files_dir

    @property
    def events_path(self) -> Path:
        return self.logs_dir / "events.jsonl"

    @property
    def failures_path(self) -> Path:
        return self.logs_dir / "failures.jsonl"

    def ensure(self, *dirs: Path) -> None:
        for directory in (self.out_dir, self.logs_dir, *dirs):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise OutputUnavailableError(f"cannot create {directory}: {exc}") from exc


def search_store(layout: EuropassLayout) -> CheckpointStore:
    return CheckpointStore(layout.meta_path)


def details_store(layout: EuropassLayout, *, deep: bool = False) -> CheckpointStore:
    return CheckpointStore(
        layout.deep_meta_dir if deep else layout.meta_dir,
        per_scope=True,
        factory=DetailCheckpoint.from_dict,
    )


class EuropassProvider(ProviderPlugin):
    provider_info = ProviderInfo(
        name=EUROPASS_PROVIDER_ID,
        title="Europass QDR",
        description="Europass Qualification Dataset Register search and detail API",
        capabilities=ProviderCapabilities(
            supports_search=True,
            supports_details=True,
            supports_deep=True,
            supports_direct=True,
        ),
        env_vars=["QDR_COUNTRY", "QDR_MAX_RPS", "QDR_CONCURRENCY", "QDR_USER_AGENT"],
        scope_registry="europass_scopes.yaml",
        homepage=EUROPASS_HOMEPAGE,
    )

    def __init__(self, options: dict[str, Any] | None = None) -> None:
        self.options = options or {}

    # -- shared wiring ---------------------------------------------------

    def _options(self, ctx: ProviderContext) -> dict[str, Any]:
        opts = dict(self.options)
        opts.update(ctx.options or {})
        return opts

    def _registry(self, opts: Mapping[str, Any]) -> ScopeRegistry:
        return load_scope_registry(opts.get("registry_path") or _default_registry_path())

    def _crawl_run(self, settings: CrawlSettings, opts: Mapping[str, Any]) -> CrawlRun:
        return CrawlRun(settings, stop_event=opts.get("stop_event"), sleep=opts.get("sleep"))

    @staticmethod
    def _pause_on_error(
        store: CheckpointStore,
        make_entry: Callable[[str], Any],
        events_path: Path,
    ) -> Callable[[str, BaseException], None]:
        def pause(scope: str, exc: BaseException) -> None:
            entry = store.get(scope) or make_entry(scope)
            error = f"{type(exc).__name__}: {exc}"
            if entry.completed:
                # raised after completion, e.g. by the snapshot hook
                log_event(events_path, "error", scope, error=error)
                return
            if hasattr(entry, "mark_paused"):
                entry.mark_paused(error)
            else:
                entry.touch()
            store.commit(entry)
            log_event(events_path, "paused", scope, error=error)

        return pause

    # -- search ----------------------------------------------------------

    def search(self, ctx: ProviderContext) -> RunSummary:
        opts = self._options(ctx)
        settings = CrawlSettings.from_options(opts, SEARCH_DEFAULTS)
        registry = self._registry(opts)
        scopes = enumerate_scopes(
            registry,
            countries=opts.get("countries"),
            levels=opts.get("levels"),
            record_type=opts.get("record_type"),
            by_level=bool(opts.get("by_level")),
        )
        layout = EuropassLayout(ctx.out_dir, opts)
        layout.ensure(layout.files_dir)

        store = search_store(layout)
        store.load()
        run = self._crawl_run(settings, opts)
        run.register_store(store)
        sink = NdjsonSink()
        snapshot = bool(opts.get("snapshot"))

        def on_complete(scope: Scope, entry: CheckpointEntry) -> None:
            if not snapshot:
                return
            paths = ScopePaths.for_scope(layout.files_dir, scope.key)
            saved = write_snapshot(
                paths.output, layout.files_dir / f"{scope.key}.json", scope.key, entry.offset
            )
            logger.info("[%s] snapshot written (%d records)", scope.key, saved)

        logger.info(
            "Searching %d scopes (%s) with %d workers at %d req/s",
            len(scopes),
            scopes[0].record_type if scopes else "-",
            settings.scope_concurrency,
            settings.max_rps,
        )

        with build_client(settings, opts.get("transport")) as client, run.signal_handlers():

            def worker(scope: Scope) -> Any:
                driver = PaginationDriver(
                    scope,
                    client=client,
                    executor=run.executor,
                    store=store,
                    sink=sink,
                    build_request=lambda s, offset, size: search_request(
                        registry, settings, s, offset, size
                    ),
                    paths=ScopePaths.for_scope(layout.files_dir, scope.key),
                    page_size=settings.page_size,
                    max_pages=settings.max_pages,
                    max_malformed=settings.max_malformed,
                    identify=uri_identifier,
                    events_path=layout.events_path,
                    stop_event=run.stop_event,
                    on_progress=run.heartbeat.beat,
                    on_complete=on_complete,
                )
                return driver.run()

            return run.run(
                scopes,
                worker,
                key=lambda scope: scope.key,
                on_error=self._pause_on_error(
                    store,
                    lambda key: CheckpointEntry(scope=key, file=f"{key}.ndjson"),
                    layout.events_path,
                ),
            )

    # -- details / deep --------------------------------------------------

    def _detail_run(
        self,
        ctx: ProviderContext,
        scopes_for: Callable[[EuropassLayout, ScopeRegistry, Mapping[str, Any]], list[DetailScope]],
        source: UriSource,
        *,
        deep: bool,
    ) -> RunSummary:
        opts = self._options(ctx)
        settings = CrawlSettings.from_options(opts, DETAIL_DEFAULTS)
        registry = self._registry(opts)
        record_type = opts.get("record_type")
        direct = bool(opts.get("direct"))
        registry.record_type(record_type)

        layout = EuropassLayout(ctx.out_dir, opts)
        layout.ensure(*([layout.data_dir, layout.errors_dir] if deep else [layout.data_dir]))
        scopes = scopes_for(layout, registry, opts)

        store = details_store(layout, deep=deep)
        store.load()
        run = self._crawl_run(settings, opts)
        run.register_store(store)
        error_sink = FilePerRecordSink(layout.errors_dir, suffix=".error.json") if deep else None

        logger.info(
            "%s: %d scopes, %d requests in flight, %d req/s%s",
            "Deep scrape" if deep else "Details",
            len(scopes),
            settings.request_concurrency,
            settings.max_rps,
            " (direct)" if direct else "",
        )

        with build_client(settings, opts.get("transport")) as client, run.signal_handlers():
            fetchers: list[DetailFetcher] = []

            def worker(scope: DetailScope) -> Any:
                fetcher = DetailFetcher(
                    scope,
                    client=client,
                    executor=run.executor,
                    store=store,
                    source=source,
                    build_url=lambda uri: detail_request(
                        registry, settings, record_type, uri, direct=direct
                    ),
                    error_sink=error_sink,
                    request_concurrency=settings.request_concurrency,
                    milestone_every=settings.milestone_every,
                    flush_interval=settings.flush_interval,
                    failures_path=layout.failures_path,
                    events_path=layout.events_path,
                    stop_event=run.stop_event,
                    on_progress=run.heartbeat.beat,
                )
                fetchers.append(fetcher)
                return fetcher.run()

            def flush_fetchers() -> None:
                for fetcher in list(fetchers):
                    fetcher.flush()

            run.register_flush(flush_fetchers)
            return run.run(
                scopes,
                worker,
                key=lambda scope: scope.key,
                on_error=self._pause_on_error(
                    store,
                    lambda key: DetailCheckpoint(scope=key),
                    layout.events_path,
                ),
            )

    def details(self, ctx: ProviderContext) -> RunSummary:
        return self._detail_run(ctx, country_detail_scopes, ndjson_uris, deep=False)

    def deep(self, ctx: ProviderContext) -> RunSummary:
        return self._detail_run(ctx, deep_scopes, index_uris, deep=True)


def country_detail_scopes(
    layout: EuropassLayout,
    registry: ScopeRegistry,
    opts: Mapping[str, Any],
) -> list[DetailScope]:
    """One scope per ``countryFiles/<ISO3>.ndjson``."""

    requested = opts.get("countries") or os.environ.get("QDR_COUNTRY")
    if requested:
        countries = resolve_countries(registry, requested)
    else:
        countries = sorted(p.stem.upper() for p in layout.country_dir.glob("*.ndjson"))
    return [
        DetailScope(
            key=country,
            source=layout.country_dir / f"{country}.ndjson",
            out_dir=layout.data_dir / country,
        )
        for country in countries
    ]


def deep_scopes(
    layout: EuropassLayout,
    registry: ScopeRegistry,
    opts: Mapping[str, Any],
) -> list[DetailScope]:
    """One scope per ``*.index.json`` URI list in the input directory."""

    wanted = set(_split_list(opts.get("scopes")))
    scopes: list[DetailScope] = []
    for path in sorted(layout.deep_input_dir.glob("*.index.json")):
        key = path.name[: -len(".index.json")]
        if wanted and key not in wanted:
            continue
        scopes.append(DetailScope(key=key, source=path, out_dir=layout.data_dir / key))
    missing = wanted - {scope.key for scope in scopes}
    if missing:
        raise ConfigError(
            f"No index file for scope(s) {', '.join(sorted(missing))} in {layout.deep_input_dir}"
        )
    return scopes


def search_status(out_dir: Path) -> dict[str, Any]:
    """Per-scope search progress plus a roll-up, read from the checkpoint."""

    store = search_store(EuropassLayout(out_dir))
    entries = store.load()
    scopes = [entries[key] for key in sorted(entries)]
    return {
        "scopes": [{"scope": e.scope, **e.to_dict()} for e in scopes],
        "completed": sum(1 for e in scopes if e.completed),
        "total": len(scopes),
        "items": sum(e.total_items for e in scopes),
        "paused": [
            {"scope": e.scope, "offset": e.offset, "error": e.last_error}
            for e in scopes
            if e.status == "paused" and not e.completed
        ],
    }


def reset_scope(out_dir: Path, scope: str, *, kind: str = "search") -> bool:
    """Drop one scope's checkpoint so the next run starts it from scratch."""

    layout = EuropassLayout(out_dir)
    if kind == "search":
        store = search_store(layout)
    elif kind in ("details", "deep"):
        store = details_store(layout, deep=kind == "deep")
    else:
        raise ConfigError(f"Unknown checkpoint kind {kind!r}")
    store.load()
    removed = store.reset(scope)
    if removed:
        log_event(layout.events_path, "reset", scope, checkpoint_kind=kind)
        logger.warning("[%s] %s checkpoint reset", scope, kind)
    return removed


__all__ = [
    "EuropassLayout",
    "EuropassProvider",
    "build_client",
    "country_detail_scopes",
    "deep_scopes",
    "detail_request",
    "enumerate_scopes",
    "reset_scope",
    "resolve_countries",
    "resolve_levels",
    "search_request",
    "search_status",
    "uri_identifier",
]
