from __future__ import annotations

from typing import Any

import pytest

from qdr_harvester.errors import ConfigError
from qdr_harvester.settings import DETAIL_DEFAULTS, SEARCH_DEFAULTS, CrawlSettings


def test_search_defaults() -> None:
    settings = CrawlSettings.from_options({}, SEARCH_DEFAULTS)
    assert settings.max_rps == 3
    assert settings.page_size == 10
    assert settings.max_retries == 3
    assert settings.initial_backoff == pytest.approx(0.8)
    assert settings.http_timeout == pytest.approx(45.0)


def test_detail_defaults() -> None:
    settings = CrawlSettings.from_options({}, DETAIL_DEFAULTS)
    assert settings.max_rps == 20
    assert settings.request_concurrency == 100
    assert settings.scope_concurrency == 1


def test_option_beats_env_beats_defaults(monkeypatch: Any) -> None:
    monkeypatch.setenv("QDR_MAX_RPS", "7")
    monkeypatch.setenv("QDR_USER_AGENT", "tester/1.0")

    from_env = CrawlSettings.from_options({}, SEARCH_DEFAULTS)
    assert from_env.max_rps == 7
    assert from_env.user_agent == "tester/1.0"

    explicit = CrawlSettings.from_options({"max_rps": 11, "page_size": None}, SEARCH_DEFAULTS)
    assert explicit.max_rps == 11
    assert explicit.page_size == 10


def test_blank_env_value_is_ignored(monkeypatch: Any) -> None:
    monkeypatch.setenv("QDR_CONCURRENCY", "")
    assert CrawlSettings.from_options({}).scope_concurrency == 10


def test_invalid_values_raise_config_error(monkeypatch: Any) -> None:
    with pytest.raises(ConfigError):
        CrawlSettings.from_options({"max_rps": "fast"})
    with pytest.raises(ConfigError):
        CrawlSettings.from_options({"page_size": 0})
    monkeypatch.setenv("QDR_CONCURRENCY", "-2")
    with pytest.raises(ConfigError):
        CrawlSettings.from_options({})
