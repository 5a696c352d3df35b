from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import partial
from typing import Any, Dict, Optional

import aiohttp

from .errors import AuthError, DecodeError, FetchCancelled, NetworkError, RequestBuildError


COINMARKETCAP_API = "https://pro-api.coinmarketcap.com"
BINANCE_API = "https://api.binance.com"

USER_AGENT = "btc-price-feed/1.0"
DEFAULT_TIMEOUT = 15.0

TWO_PLACES = Decimal("0.01")
# Exclusive bound of a DECIMAL(18, 2) column
MAX_PRICE = Decimal("1e16")

# Floats in JSON bodies are decoded straight to Decimal, never through binary float
_loads = partial(json.loads, parse_float=Decimal)


@dataclass(frozen=True)
class PriceQuote:
    source_id: str
    price_usd: Decimal
    observed_at: Optional[str] = None


def new_session(timeout: float = DEFAULT_TIMEOUT) -> aiohttp.ClientSession:
    """Create the process-wide HTTP session shared by every source and cycle.

    Must be called with a running event loop.
    """
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout),
        headers={"User-Agent": USER_AGENT},
    )


def to_decimal(value: Any, source_id: str) -> Decimal:
    """Normalize a decoded JSON price (Decimal, int or numeric string) to a finite Decimal.

    Prices that cannot be stored with two fraction digits in DECIMAL(18, 2)
    are rejected here, so formatting a quote never fails later.
    """
    if isinstance(value, bool):
        raise DecodeError(source_id, "decode", f"price is not numeric: {value!r}")
    if isinstance(value, (Decimal, int)):
        price = Decimal(value)
    elif isinstance(value, str):
        try:
            price = Decimal(value.strip())
        except InvalidOperation:
            raise DecodeError(source_id, "decode", f"price is not numeric: {value!r}") from None
    else:
        raise DecodeError(source_id, "decode", f"price is not numeric: {value!r}")
    if not price.is_finite():
        raise DecodeError(source_id, "decode", f"price is not finite: {value!r}")
    if abs(price) >= MAX_PRICE:
        raise DecodeError(source_id, "decode", f"price out of range: {value!r}")
    return price


def format_price(price: Optional[Decimal]) -> str:
    """Render a price with exactly two fraction digits; a missing price renders empty."""
    if price is None:
        return ""
    return f"{price.quantize(TWO_PLACES, rounding=ROUND_HALF_UP):f}"


class PriceSource:
    """One upstream price endpoint.

    Subclasses provide the endpoint, query parameters, headers and the parser for
    their own response schema. `fetch` performs exactly one GET through the shared
    session and raises a FetchError subclass on any failure.
    """

    source_id: str = ""
    column: str = ""
    url: str = ""

    def request_params(self) -> Dict[str, str]:
        return {}

    def request_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def parse(self, payload: Any) -> PriceQuote:
        raise NotImplementedError

    async def fetch(self, session: aiohttp.ClientSession, cancel: Optional[asyncio.Event] = None) -> PriceQuote:
        if cancel is not None and cancel.is_set():
            raise FetchCancelled(self.source_id, "request", "shutdown requested before request")
        params = self.request_params()
        headers = self.request_headers()
        if cancel is None:
            payload = await self._get_json(session, params, headers)
        else:
            payload = await self._until_cancelled(self._get_json(session, params, headers), cancel)
        return self.parse(payload)

    async def _get_json(self, session: aiohttp.ClientSession, params: Dict[str, str], headers: Dict[str, str]) -> Any:
        try:
            async with session.get(self.url, params=params, headers=headers) as resp:
                if resp.status in (401, 403):
                    raise AuthError(self.source_id, "http", f"HTTP {resp.status}")
                if resp.status >= 400:
                    body = await resp.text()
                    raise NetworkError(self.source_id, "http", f"HTTP {resp.status}: {body[:200]}")
                return await resp.json(loads=_loads, content_type=None)
        except aiohttp.InvalidURL as e:
            raise RequestBuildError(self.source_id, "request", f"invalid url {self.url!r}: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(self.source_id, "network", str(e) or type(e).__name__) from e
        except ValueError as e:
            raise DecodeError(self.source_id, "decode", f"body is not JSON: {e}") from e

    async def _until_cancelled(self, request_coro, cancel: asyncio.Event) -> Any:
        request = asyncio.ensure_future(request_coro)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({request, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not request.done():
                request.cancel()
        if request not in done:
            # Let the cancelled request unwind and release its connection
            await asyncio.wait({request})
            raise FetchCancelled(self.source_id, "network", "shutdown requested during request")
        return request.result()


class CoinMarketCapSource(PriceSource):
    source_id = "coinmarketcap"
    column = "CoinMarketCap Price"
    url = f"{COINMARKETCAP_API}/v1/cryptocurrency/listings/latest"

    def __init__(self, token: Optional[str], convert: str = "USD") -> None:
        self.token = token
        self.convert = convert

    def request_params(self) -> Dict[str, str]:
        return {"start": "1", "limit": "1", "convert": self.convert}

    def request_headers(self) -> Dict[str, str]:
        if not self.token:
            raise AuthError(self.source_id, "auth", "COIN_MARKET_CAP_TOKEN is not set")
        return {"Accepts": "application/json", "X-CMC_PRO_API_KEY": self.token}

    def parse(self, payload: Any) -> PriceQuote:
        """Read data[0].quote.<currency>.price and status.timestamp.

        The quote mapping is keyed by currency; the requested currency is used, or
        the only entry when the mapping holds exactly one.
        """
        try:
            quote = payload["data"][0]["quote"]
        except (KeyError, IndexError, TypeError):
            raise DecodeError(self.source_id, "decode", "missing data[0].quote") from None
        if not isinstance(quote, dict) or not quote:
            raise DecodeError(self.source_id, "decode", "data[0].quote is empty")
        if self.convert in quote:
            entry = quote[self.convert]
        elif len(quote) == 1:
            entry = next(iter(quote.values()))
        else:
            raise DecodeError(self.source_id, "decode", f"no {self.convert} entry among {sorted(quote)}")
        if not isinstance(entry, dict) or entry.get("price") is None:
            raise DecodeError(self.source_id, "decode", "missing quote price")
        price = to_decimal(entry["price"], self.source_id)

        observed_at = None
        status = payload.get("status")
        if isinstance(status, dict) and isinstance(status.get("timestamp"), str):
            observed_at = status["timestamp"]
        return PriceQuote(self.source_id, price, observed_at)


class BinanceSource(PriceSource):
    source_id = "binance"
    column = "Binance Price"
    url = f"{BINANCE_API}/api/v3/ticker/price"

    def __init__(self, symbol: str = "BTCUSDT") -> None:
        self.symbol = symbol

    def request_params(self) -> Dict[str, str]:
        return {"symbol": self.symbol}

    def parse(self, payload: Any) -> PriceQuote:
        if not isinstance(payload, dict) or payload.get("price") is None:
            raise DecodeError(self.source_id, "decode", "missing price")
        return PriceQuote(self.source_id, to_decimal(payload["price"], self.source_id))


SOURCE_IDS = (CoinMarketCapSource.source_id, BinanceSource.source_id)


def build_source(source_id: str, token: Optional[str] = None) -> PriceSource:
    if source_id == CoinMarketCapSource.source_id:
        return CoinMarketCapSource(token)
    if source_id == BinanceSource.source_id:
        return BinanceSource()
    raise ValueError(f"unknown price source: {source_id!r} (expected one of {', '.join(SOURCE_IDS)})")
