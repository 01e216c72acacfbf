from __future__ import annotations

import pytest

from stockmarket.config import load_settings
from stockmarket.errors import ConfigInvalid


def test_symbols_from_env_are_split_normalized_and_deduplicated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STOCKMARKET_SYMBOLS", "aapl, msft,,AAPL , brk.b")

    settings = load_settings(_env_file=None)

    assert settings.symbols == ["AAPL", "MSFT", "BRK.B"]


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STOCKMARKET_SYMBOLS", raising=False)
    settings = load_settings(_env_file=None)

    assert settings.symbols == []
    assert settings.rate_limit_calls == 5
    assert settings.rate_limit_period_seconds == 60.0
    assert settings.poll_interval_seconds == 300
    assert settings.revalidate_interval_seconds == 86400
    assert settings.state_namespace == "stockmarket.0"


def test_symbol_list_passed_in_code_is_normalized() -> None:
    settings = load_settings(_env_file=None, symbols=[" spy", "SPY", "qqq"])
    assert settings.symbols == ["SPY", "QQQ"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"quote_url": "https://quotes.test/v1/quote"},
        {"max_retries": -1},
        {"rate_limit_calls": 0},
        {"backoff_base_seconds": 2.0, "backoff_max_seconds": 1.0},
        {"symbols": ["AAPL", "   "]},
    ],
)
def test_invalid_settings_raise_config_invalid(overrides: dict) -> None:
    with pytest.raises(ConfigInvalid):
        load_settings(_env_file=None, **overrides)


def test_symbols_from_env_accept_a_json_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STOCKMARKET_SYMBOLS", ' ["aapl", "MSFT", "AAPL"] ')

    settings = load_settings(_env_file=None)

    assert settings.symbols == ["AAPL", "MSFT"]


def test_malformed_json_symbol_list_is_config_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STOCKMARKET_SYMBOLS", '["AAPL", "MSFT"')

    with pytest.raises(ConfigInvalid):
        load_settings(_env_file=None)
