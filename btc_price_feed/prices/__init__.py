"""BTC/USD price sampler.

Fetches CoinMarketCap and Binance concurrently, reconciles partial failures,
and appends one row per cycle to an append-only log.
"""

__all__ = [
    "api",
    "aggregate",
    "persistence",
    "db",
    "validation",
    "scheduler",
]
