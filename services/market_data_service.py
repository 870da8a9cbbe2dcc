"""Market data service for FX, metals, energy and index quotes."""

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import numpy as np
import requests

from config.settings import settings
from src.data import instruments
from src.data.cache import DataCache
from src.data.fallback_provider import FallbackPriceProvider
from src.data.rate_limiter import RateLimiter
from src.data.request_batcher import RequestBatcher
from src.models.market_data import MarketPrice
from src.utils.exceptions import DataError

logger = logging.getLogger(__name__)

PriceCallback = Callable[[MarketPrice], Union[None, Awaitable[None]]]


class MarketDataService:
    """
    Service for fetching market prices from the upstream quote provider.

    Every query goes through the same pipeline: unsupported symbols and
    rate-limited symbols are answered by the fallback provider, fresh cache
    entries are served directly, everything else is coalesced by the request
    batcher into upstream fetches. ``get_market_price`` never raises; any
    failure degrades to a fallback price.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        provider_name: Optional[str] = None,
        cache: Optional[DataCache[MarketPrice]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        fallback_provider: Optional[FallbackPriceProvider] = None,
        batch_delay_ms: Optional[float] = None,
        request_timeout: Optional[float] = None,
        streaming_interval: Optional[float] = None,
        streaming_jitter: Optional[float] = None
    ):
        """
        Initialize market data service.

        Args:
            base_url: Quote endpoint (defaults to settings)
            api_token: Bearer token; resolved from settings when None
            provider_name: Source tag for live prices (defaults to settings)
            cache: Price cache (defaults to a cache with configured freshness)
            rate_limiter: Per-symbol limiter (defaults to configured rate)
            fallback_provider: Provider for degraded prices
            batch_delay_ms: Debounce delay of the request batcher
            request_timeout: HTTP timeout in seconds
            streaming_interval: Seconds between polls of a subscribed symbol
            streaming_jitter: Maximum random seconds added to each poll delay
        """
        config = settings.market_data

        self.base_url = (base_url or config.base_url).rstrip('/')
        self.api_token = api_token if api_token is not None else settings.resolve_api_token()
        self.provider_name = provider_name or config.provider_name
        self.request_timeout = request_timeout if request_timeout is not None else config.request_timeout_seconds
        self.streaming_interval = (
            streaming_interval if streaming_interval is not None else config.streaming_interval_seconds
        )
        self.streaming_jitter = streaming_jitter if streaming_jitter is not None else config.streaming_jitter_seconds

        self.cache = cache or DataCache[MarketPrice](config.cache_freshness_ms, name="market_prices")
        self.rate_limiter = rate_limiter or RateLimiter(config.max_requests_per_second)
        self.fallback_provider = fallback_provider or FallbackPriceProvider(config.last_known_max_age_ms)
        self.batcher = RequestBatcher[MarketPrice](
            self._process_batch,
            batch_delay_ms if batch_delay_ms is not None else config.batch_delay_ms
        )

        # Real-time subscriptions
        self._subscriptions: Dict[str, List[PriceCallback]] = {}
        self._pollers: Dict[str, asyncio.Task] = {}
        self._jitter_rng = np.random.default_rng()

        self._last_live_update: Optional[int] = None
        self._live_fetches = 0
        self._failed_fetches = 0

        logger.info(f"Initialized market data service (provider={self.provider_name})")

    # ------------------------------------------------------------------
    # Symbols
    # ------------------------------------------------------------------

    def is_symbol_supported(self, symbol: str) -> bool:
        """Check whether the upstream provider quotes symbol"""
        return instruments.is_supported(symbol.upper())

    def get_supported_symbols(self) -> List[str]:
        return instruments.supported_symbols()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_market_price(self, symbol: str) -> MarketPrice:
        """
        Get the current price for symbol.

        Args:
            symbol: Internal symbol (e.g., 'EURUSD')

        Returns:
            A live, cached, synthetic or fallback MarketPrice
        """
        symbol = symbol.upper()

        if not instruments.is_supported(symbol):
            logger.warning(f"Symbol {symbol} not supported by {self.provider_name}, using fallback")
            return self.fallback_provider.get_fallback_price(symbol)

        cached = self.cache.get(symbol)
        if cached is not None:
            return cached

        wait_time = self.rate_limiter.get_wait_time(symbol)
        if wait_time > 0:
            logger.debug(f"Rate limited for {symbol} ({wait_time:.0f}ms), using fallback")
            return self.fallback_provider.get_fallback_price(symbol)

        try:
            return await self.batcher.request(symbol)
        except Exception as e:
            logger.warning(f"Failed to fetch {symbol}, using fallback: {e}")
            return self.fallback_provider.get_fallback_price(symbol)

    async def get_multiple_market_prices(self, symbols: List[str]) -> List[MarketPrice]:
        """
        Get prices for several symbols concurrently.

        Returns:
            Prices in the same order as symbols
        """
        if not symbols:
            return []

        return list(await asyncio.gather(*(self.get_market_price(symbol) for symbol in symbols)))

    async def _process_batch(self, symbols: List[str]) -> Dict[str, MarketPrice]:
        """
        Resolve a batch of symbols, one upstream call per symbol at most.

        Support, cache and rate limit are checked again here since the state
        may have changed while the request waited in the batcher.
        """
        results: Dict[str, MarketPrice] = {}

        for symbol in symbols:
            if not instruments.is_supported(symbol):
                results[symbol] = self.fallback_provider.get_fallback_price(symbol)
                continue

            cached = self.cache.get(symbol)
            if cached is not None:
                results[symbol] = cached
                continue

            if not self.rate_limiter.can_make_request(symbol):
                results[symbol] = self.fallback_provider.get_fallback_price(symbol)
                continue

            self.rate_limiter.record_request(symbol)

            try:
                results[symbol] = await self._fetch_live_price(symbol)
            except Exception as e:
                self._failed_fetches += 1
                logger.warning(f"Live fetch failed for {symbol}, using fallback: {e}")
                results[symbol] = self.fallback_provider.get_fallback_price(symbol)

        return results

    async def _fetch_live_price(self, symbol: str) -> MarketPrice:
        """
        Fetch the latest candle for symbol and write it through.

        Raises:
            DataError: If the payload is an error or cannot be parsed
            requests.RequestException: On HTTP errors and timeouts
        """
        provider_symbol = instruments.get_provider_symbol(symbol)
        if provider_symbol is None:
            raise DataError(f"No provider mapping for {symbol}")

        url = f"{self.base_url}/{provider_symbol}"
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        }
        if self.api_token:
            headers['Authorization'] = f"Bearer {self.api_token}"

        response = await asyncio.to_thread(
            requests.get,
            url,
            headers=headers,
            timeout=self.request_timeout
        )
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as e:
            raise DataError(f"Invalid JSON for {symbol}: {e}") from e

        market_price = self._parse_candles(symbol, payload)

        self.cache.set(symbol, market_price)
        self.fallback_provider.update_last_known(symbol, market_price)
        self._last_live_update = market_price.timestamp
        self._live_fetches += 1

        logger.debug(f"Fetched {symbol} from {self.provider_name}: {market_price.price}")
        return market_price

    def _parse_candles(self, symbol: str, payload: Any) -> MarketPrice:
        """
        Convert a candles payload into a MarketPrice.

        Raises:
            DataError: If the payload carries an error or malformed candle data
        """
        if not isinstance(payload, dict):
            raise DataError(f"Unexpected payload type for {symbol}")

        if payload.get('errorMessage'):
            raise DataError(f"API returned error: {payload['errorMessage']}")

        candles = payload.get('candles')
        if not candles:
            raise DataError(f"No market data available for {symbol}")
        if not isinstance(candles, list):
            raise DataError(f"Invalid candle data format for {symbol}")

        latest = candles[-1]
        mid = latest.get('mid') if isinstance(latest, dict) else None
        if not isinstance(mid, dict):
            raise DataError(f"Invalid candle data format for {symbol}")

        try:
            open_price = float(mid['o'])
            close = float(mid.get('c') or mid['o'])
            high = float(mid['h'])
            low = float(mid['l'])
            volume = int(latest.get('volume') or 0)
        except (KeyError, TypeError, ValueError) as e:
            raise DataError(f"Invalid price data received for {symbol}: {e}") from e

        if not all(math.isfinite(v) for v in (open_price, close, high, low)):
            raise DataError(f"Non-finite price data received for {symbol}")

        decimals = instruments.get_decimal_places(symbol)
        spread = instruments.get_live_spread(symbol)
        change = close - open_price
        change_percent = (change / open_price * 100) if open_price != 0 else 0.0

        try:
            return MarketPrice(
                symbol=symbol,
                name=instruments.get_symbol_name(symbol),
                price=round(close, decimals),
                bid=round(close - spread / 2, decimals),
                ask=round(close + spread / 2, decimals),
                change=round(change, decimals),
                change_percent=round(change_percent, 2),
                high=round(high, decimals),
                low=round(low, decimals),
                volume=volume,
                timestamp=int(time.time() * 1000),
                category=instruments.get_symbol_category(symbol),
                source=self.provider_name
            )
        except ValueError as e:
            raise DataError(f"Rejected quote for {symbol}: {e}") from e

    # ------------------------------------------------------------------
    # Real-time updates
    # ------------------------------------------------------------------

    def subscribe_to_real_time_updates(
        self,
        symbols: List[str],
        callback: PriceCallback
    ) -> Callable[[], None]:
        """
        Poll symbols periodically and push live prices to callback.

        Must be called from a running event loop. Only prices sourced from
        the upstream provider are delivered.

        Args:
            symbols: Symbols to follow
            callback: Sync or async function receiving each MarketPrice

        Returns:
            Function that removes this subscription
        """
        symbols = [s.upper() for s in symbols if s]
        loop = asyncio.get_running_loop()

        for symbol in symbols:
            callbacks = self._subscriptions.setdefault(symbol, [])
            if callback not in callbacks:
                callbacks.append(callback)
            if symbol not in self._pollers:
                self._pollers[symbol] = loop.create_task(self._poll_symbol(symbol))
                logger.info(f"Started polling {symbol} every {self.streaming_interval}s")

        def unsubscribe() -> None:
            for symbol in symbols:
                callbacks = self._subscriptions.get(symbol)
                if not callbacks:
                    continue
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    del self._subscriptions[symbol]
                    self._stop_polling(symbol)

        return unsubscribe

    def _stop_polling(self, symbol: str) -> None:
        task = self._pollers.pop(symbol, None)
        if task is not None:
            task.cancel()
            logger.info(f"Stopped polling {symbol}")

    def _next_poll_delay(self) -> float:
        if self.streaming_jitter > 0:
            return self.streaming_interval + float(self._jitter_rng.uniform(0, self.streaming_jitter))
        return self.streaming_interval

    async def _poll_symbol(self, symbol: str) -> None:
        while symbol in self._subscriptions:
            await asyncio.sleep(self._next_poll_delay())

            if symbol not in self._subscriptions:
                break

            try:
                price = await self.get_market_price(symbol)
                if price.source == self.provider_name:
                    await self._notify_subscribers(symbol, price)
            except Exception as e:
                logger.error(f"Error polling {symbol}: {e}")

    async def _notify_subscribers(self, symbol: str, price: MarketPrice) -> None:
        for callback in list(self._subscriptions.get(symbol, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(price)
                else:
                    callback(price)
            except Exception as e:
                logger.error(f"Error in price callback for {symbol}: {e}")

    def get_subscription_status(self) -> Dict[str, Any]:
        """
        Get real-time subscription status.

        Returns:
            Dictionary with active symbols and listener counts
        """
        return {
            'active_symbols': sorted(self._pollers.keys()),
            'listeners': {symbol: len(cbs) for symbol, cbs in self._subscriptions.items()},
            'polling_interval_seconds': self.streaming_interval,
        }

    async def close(self) -> None:
        """Stop every poller and cancel requests waiting in the batcher."""
        tasks = list(self._pollers.values())
        self._subscriptions.clear()
        for symbol in list(self._pollers.keys()):
            self._stop_polling(symbol)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.batcher.clear()
        logger.info("Market data service closed")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        self.cache.clear()

    async def test_connection(self, symbol: str = 'XAUUSD') -> bool:
        """
        Check that a live quote can be fetched.

        Bypasses cache, limiter and fallback.

        Returns:
            True if the upstream provider returned a valid quote
        """
        try:
            await self._fetch_live_price(symbol)
            return True
        except (DataError, requests.RequestException) as e:
            logger.warning(f"Connection test failed: {e}")
            return False

    def get_api_status(self) -> Dict[str, Any]:
        """
        Get upstream provider status.

        Returns:
            Dictionary with provider name, state and fetch counters
        """
        return {
            'provider': self.provider_name,
            'status': 'streaming' if self._pollers else 'idle',
            'last_update': self._last_live_update,
            'live_fetches': self._live_fetches,
            'failed_fetches': self._failed_fetches,
            'cache': self.cache.get_stats(),
        }
