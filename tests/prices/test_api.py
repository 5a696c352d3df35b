#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import asyncio
import sys
import time
from decimal import Decimal

if __name__ == "__main__":
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

import aiohttp

from btc_price_feed.prices.api import (
    BinanceSource,
    CoinMarketCapSource,
    build_source,
    format_price,
    to_decimal,
)
from btc_price_feed.prices.errors import AuthError, DecodeError, FetchCancelled, NetworkError
from fakes import BINANCE_URL, CMC_URL, FakeResponse, FakeSession, binance_body, cmc_body


def _fetch(source, session, cancel_after=None, cancel_now=False):
    async def go():
        cancel = asyncio.Event()
        if cancel_now:
            cancel.set()
        if cancel_after is not None:
            asyncio.get_running_loop().call_later(cancel_after, cancel.set)
        return await source.fetch(session, cancel)

    return asyncio.run(go())


def _raises(exc_type, fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
    except exc_type as e:
        return e
    raise AssertionError(f"expected {exc_type.__name__}")


def test_coinmarketcap_float_price() -> None:
    session = FakeSession({CMC_URL: FakeResponse(cmc_body(65432.1))})
    q = _fetch(CoinMarketCapSource("tok"), session)
    assert q.source_id == "coinmarketcap"
    assert q.price_usd == Decimal("65432.1")
    assert q.observed_at == "2024-05-01T12:34:56.789Z"
    assert format_price(q.price_usd) == "65432.10"

    url, params, headers = session.calls[0]
    assert url == CMC_URL
    assert params == {"start": "1", "limit": "1", "convert": "USD"}
    assert headers["X-CMC_PRO_API_KEY"] == "tok"
    assert headers["Accepts"] == "application/json"


def test_coinmarketcap_single_other_currency_entry() -> None:
    body = {"data": [{"quote": {"USDT": {"price": "65000.5"}}}]}
    q = _fetch(CoinMarketCapSource("tok"), FakeSession({CMC_URL: FakeResponse(body)}))
    assert format_price(q.price_usd) == "65000.50"
    assert q.observed_at is None


def test_coinmarketcap_ambiguous_quote_mapping() -> None:
    body = {"data": [{"quote": {"EUR": {"price": 1}, "GBP": {"price": 2}}}]}
    e = _raises(DecodeError, _fetch, CoinMarketCapSource("tok"), FakeSession({CMC_URL: FakeResponse(body)}))
    assert e.source_id == "coinmarketcap" and e.phase == "decode"


def test_coinmarketcap_missing_data() -> None:
    for body in ({"data": []}, {"status": {}}, [], {"data": [{"quote": {"USD": {}}}]}):
        _raises(DecodeError, _fetch, CoinMarketCapSource("tok"), FakeSession({CMC_URL: FakeResponse(body)}))


def test_coinmarketcap_missing_token_fails_without_request() -> None:
    session = FakeSession({CMC_URL: FakeResponse(cmc_body())})
    e = _raises(AuthError, _fetch, CoinMarketCapSource(None), session)
    assert e.phase == "auth"
    assert session.calls == []


def test_binance_string_price() -> None:
    session = FakeSession({BINANCE_URL: FakeResponse(binance_body("65430.55"))})
    q = _fetch(BinanceSource(), session)
    assert q == BinanceSource().parse(binance_body("65430.55"))
    assert format_price(q.price_usd) == "65430.55"
    url, params, headers = session.calls[0]
    assert params == {"symbol": "BTCUSDT"}
    assert "X-CMC_PRO_API_KEY" not in headers


def test_http_errors() -> None:
    e = _raises(AuthError, _fetch, CoinMarketCapSource("bad"), FakeSession({CMC_URL: FakeResponse("{}", status=401)}))
    assert e.phase == "http"
    e = _raises(NetworkError, _fetch, BinanceSource(), FakeSession({BINANCE_URL: FakeResponse("oops", status=503)}))
    assert e.phase == "http" and "503" in e.message


def test_network_failures() -> None:
    for err in (aiohttp.ClientConnectionError("connection refused"), asyncio.TimeoutError()):
        e = _raises(NetworkError, _fetch, BinanceSource(), FakeSession({BINANCE_URL: FakeResponse(error=err)}))
        assert e.source_id == "binance" and e.phase == "network"


def test_body_not_json() -> None:
    e = _raises(DecodeError, _fetch, BinanceSource(), FakeSession({BINANCE_URL: FakeResponse("<html>busy</html>")}))
    assert e.phase == "decode"
    _raises(DecodeError, _fetch, BinanceSource(), FakeSession({BINANCE_URL: FakeResponse("")}))


def test_to_decimal() -> None:
    assert to_decimal("65430.55", "x") == Decimal("65430.55")
    assert to_decimal(Decimal("65432.1"), "x") == Decimal("65432.1")
    assert to_decimal(65432, "x") == Decimal(65432)
    assert to_decimal("9999999999999999.99", "x") == Decimal("9999999999999999.99")
    for bad in (True, "abc", "NaN", "Infinity", None, [1], 65432.1):
        _raises(DecodeError, to_decimal, bad, "x")


def test_to_decimal_rejects_unstorable_magnitude() -> None:
    for huge in ("1e30", "-1e16", Decimal("1E+30"), 10**16):
        e = _raises(DecodeError, to_decimal, huge, "binance")
        assert e.source_id == "binance" and e.phase == "decode"

    session = FakeSession({BINANCE_URL: FakeResponse(binance_body("1e30"))})
    _raises(DecodeError, _fetch, BinanceSource(), session)


def test_format_price() -> None:
    assert format_price(Decimal("65432.1")) == "65432.10"
    assert format_price(Decimal("65430.555")) == "65430.56"
    assert format_price(Decimal("1E+5")) == "100000.00"
    assert format_price(None) == ""


def test_cancelled_before_request() -> None:
    session = FakeSession({BINANCE_URL: FakeResponse(binance_body())})
    e = _raises(FetchCancelled, _fetch, BinanceSource(), session, cancel_now=True)
    assert e.phase == "request"
    assert session.calls == []


def test_cancelled_during_request() -> None:
    session = FakeSession({BINANCE_URL: FakeResponse(binance_body(), delay=10.0)})
    t0 = time.monotonic()
    e = _raises(FetchCancelled, _fetch, BinanceSource(), session, cancel_after=0.05)
    assert time.monotonic() - t0 < 2.0
    assert e.phase == "network"
    assert len(session.calls) == 1


def test_build_source() -> None:
    assert isinstance(build_source("binance"), BinanceSource)
    cmc = build_source("coinmarketcap", "tok")
    assert isinstance(cmc, CoinMarketCapSource) and cmc.token == "tok"
    _raises(ValueError, build_source, "kraken")


def main() -> None:
    test_coinmarketcap_float_price()
    test_coinmarketcap_single_other_currency_entry()
    test_coinmarketcap_ambiguous_quote_mapping()
    test_coinmarketcap_missing_data()
    test_coinmarketcap_missing_token_fails_without_request()
    test_binance_string_price()
    test_http_errors()
    test_network_failures()
    test_body_not_json()
    test_to_decimal()
    test_to_decimal_rejects_unstorable_magnitude()
    test_format_price()
    test_cancelled_before_request()
    test_cancelled_during_request()
    test_build_source()
    print("api tests OK")


if __name__ == "__main__":
    main()
