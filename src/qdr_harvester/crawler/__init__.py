"""Resumable, rate-limited crawl engine."""

from qdr_harvester.crawler.checkpoint import CheckpointStore, PeriodicFlusher, reconcile
from qdr_harvester.crawler.dedup import DedupIndex
from qdr_harvester.crawler.detail import DetailFetcher, Watermark, index_uris, ndjson_uris
from qdr_harvester.crawler.pagination import PaginationDriver, ScopePaths
from qdr_harvester.crawler.pool import BoundedExecutor, ScopePool
from qdr_harvester.crawler.rate_limiter import RateLimiterClosed, TokenBucket
from qdr_harvester.crawler.responses import PageShape, SearchPage, decode_search_page
from qdr_harvester.crawler.retry import ErrorKind, FetchResult, RetryExecutor
from qdr_harvester.crawler.runner import CrawlRun, Heartbeat
from qdr_harvester.crawler.sink import FilePerRecordSink, NdjsonSink

__all__ = [
    "BoundedExecutor",
    "CheckpointStore",
    "CrawlRun",
    "DedupIndex",
    "DetailFetcher",
    "ErrorKind",
    "FetchResult",
    "FilePerRecordSink",
    "Heartbeat",
    "NdjsonSink",
    "PageShape",
    "PaginationDriver",
    "PeriodicFlusher",
    "RateLimiterClosed",
    "RetryExecutor",
    "ScopePaths",
    "ScopePool",
    "SearchPage",
    "TokenBucket",
    "Watermark",
    "decode_search_page",
    "index_uris",
    "ndjson_uris",
    "reconcile",
]
