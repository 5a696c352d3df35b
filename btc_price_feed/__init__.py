"""BTC price feed - periodic BTC/USD sampling from CoinMarketCap and Binance.

Provides:
- Concurrent two-source price fetch with partial-failure reconciliation
- Append-only CSV (or DuckDB) price log
- Long-running 5-minute scheduler with graceful shutdown
"""

__version__ = "0.1.0"

# Expose main submodules
from . import prices
from . import scripts

__all__ = ["prices", "scripts", "__version__"]
