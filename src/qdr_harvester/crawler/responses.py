from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping


class PageShape(str, Enum):
    COURSES = "courses"
    ITEMS = "items"
    RESULTS = "results"
    HITS = "hits.hits"
    DATA_ITEMS = "data.items"
    DATA_RESULTS = "data.results"
    BARE_LIST = "list"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class PaginationInfo:
    current_page: int
    total_pages: int

    @property
    def is_last(self) -> bool:
        return self.current_page >= self.total_pages


@dataclass(frozen=True)
class SearchPage:
    shape: PageShape
    items: list[Any] = field(default_factory=list)
    pagination: PaginationInfo | None = None

    @property
    def recognized(self) -> bool:
        return self.shape is not PageShape.UNRECOGNIZED

    @property
    def is_empty(self) -> bool:
        return not self.items


def _path(*keys: str) -> Callable[[Any], Any]:
    def getter(payload: Any) -> Any:
        node = payload
        for key in keys:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
        return node

    return getter


# Known result-list locations, highest priority first. The Europass QDR API
# answers with ``courses``; the rest cover older or proxied response shapes.
_SHAPES: tuple[tuple[PageShape, Callable[[Any], Any]], ...] = (
    (PageShape.COURSES, _path("courses")),
    (PageShape.ITEMS, _path("items")),
    (PageShape.RESULTS, _path("results")),
    (PageShape.HITS, _path("hits", "hits")),
    (PageShape.DATA_ITEMS, _path("data", "items")),
    (PageShape.DATA_RESULTS, _path("data", "results")),
)


def _strict_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def decode_pagination(payload: Any) -> PaginationInfo | None:
    info = payload.get("paginationInfos") if isinstance(payload, Mapping) else None
    if not isinstance(info, Mapping):
        return None
    current = _strict_int(info.get("currentPageNumber"))
    total = _strict_int(info.get("totalPageCount"))
    if current is None or total is None:
        return None
    return PaginationInfo(current_page=current, total_pages=total)


def decode_search_page(payload: Any) -> SearchPage:
    """Match ``payload`` against the known page shapes in priority order."""

    if isinstance(payload, list):
        return SearchPage(shape=PageShape.BARE_LIST, items=list(payload))
    if not isinstance(payload, Mapping):
        return SearchPage(shape=PageShape.UNRECOGNIZED)

    for shape, getter in _SHAPES:
        items = getter(payload)
        if isinstance(items, list):
            return SearchPage(
                shape=shape,
                items=list(items),
                pagination=decode_pagination(payload),
            )
    return SearchPage(shape=PageShape.UNRECOGNIZED)


__all__ = [
    "PageShape",
    "PaginationInfo",
    "SearchPage",
    "decode_pagination",
    "decode_search_page",
]
