"""
Yahoo Finance price feed for the market-data sync path.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import yfinance as yf

from sigalert.timeutil import utcnow

logger = logging.getLogger(__name__)

# Exchange pair suffixes quoted against the US dollar on Yahoo
_USD_QUOTES = ("USDT", "USDC", "BUSD", "USD")


@dataclass
class PriceQuote:
    """Current market values for one ticker."""

    ticker: str
    price: float
    change_pct: float = 0.0
    volatility: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def market_conditions(self) -> dict:
        if self.volatility is None:
            return {}
        return {"volatility": self.volatility}


def to_yahoo_symbol(ticker: str) -> str:
    """Map exchange pairs like BTCUSDT to Yahoo symbols like BTC-USD."""
    ticker = ticker.upper()
    if "-" in ticker:
        return ticker
    for quote in _USD_QUOTES:
        if ticker.endswith(quote) and len(ticker) > len(quote):
            return f"{ticker[: -len(quote)]}-USD"
    return ticker


class YahooPriceFeed:
    """Fetches quotes and realized volatility from Yahoo Finance."""

    def __init__(self, lookback_days: int = 30):
        self.lookback_days = lookback_days

    def get_quote(self, ticker: str) -> PriceQuote:
        """
        Fetch the latest quote for a ticker.

        Args:
            ticker: Exchange ticker (e.g., "BTCUSDT") or Yahoo symbol

        Returns:
            PriceQuote with percent change vs the previous close and the
            standard deviation of daily returns as volatility

        Raises:
            ValueError: If no data is available
        """
        symbol = to_yahoo_symbol(ticker)
        hist = yf.Ticker(symbol).history(period=f"{self.lookback_days}d")

        if hist is None or hist.empty:
            raise ValueError(f"No price data available: {ticker} ({symbol})")

        closes = hist["Close"].dropna()
        if closes.empty:
            raise ValueError(f"No price data available: {ticker} ({symbol})")

        price = float(closes.iloc[-1])
        change_pct = 0.0
        if len(closes) >= 2:
            previous = float(closes.iloc[-2])
            if previous:
                change_pct = (price - previous) / previous * 100

        volatility = None
        returns = closes.pct_change().dropna()
        if len(returns) >= 2:
            std = float(returns.std())
            if math.isfinite(std):
                volatility = std

        return PriceQuote(
            ticker=ticker.upper(),
            price=price,
            change_pct=change_pct,
            volatility=volatility,
        )

    def get_quotes(self, tickers: list[str]) -> dict[str, PriceQuote]:
        """
        Fetch quotes for multiple tickers.

        Returns:
            Dictionary mapping ticker to PriceQuote; unavailable tickers are skipped
        """
        results = {}
        for ticker in tickers:
            try:
                results[ticker.upper()] = self.get_quote(ticker)
            except ValueError as e:
                logger.warning(f"Skipping {ticker}: {e}")
            except Exception as e:
                logger.error(f"Error fetching {ticker}: {e}")
        return results
