"""Plausible prices for when live data is unavailable."""
import logging
import time
from dataclasses import replace
from typing import Dict, Optional

import numpy as np

from src.data import instruments
from src.models.market_data import MarketPrice, SOURCE_SYNTHETIC, SOURCE_FALLBACK

logger = logging.getLogger(__name__)

MEAN_REVERSION = 0.1


class FallbackPriceProvider:
    """
    Always produces a price for a symbol.

    With a recent real price on record, the price continues as a
    mean-reverting random walk anchored to it (``synthetic``). Otherwise a
    static base rate with bounded noise is used (``fallback``).
    """

    def __init__(
        self,
        last_known_max_age_ms: float = 60000,
        seed: Optional[int] = None
    ):
        """
        Initialize fallback provider.

        Args:
            last_known_max_age_ms: Age limit for a last-known price to anchor
                synthetic continuation
            seed: Optional seed for the random generator
        """
        self.last_known_max_age_ms = last_known_max_age_ms
        self._rng = np.random.default_rng(seed)
        self._last_known: Dict[str, MarketPrice] = {}
        self._movement: Dict[str, float] = {}

    def update_last_known(self, symbol: str, price: MarketPrice) -> None:
        """Record the latest real price for symbol."""
        self._last_known[symbol] = price

    def get_last_known(self, symbol: str) -> Optional[MarketPrice]:
        return self._last_known.get(symbol)

    def get_fallback_price(self, symbol: str) -> MarketPrice:
        """
        Produce a price for symbol without contacting the upstream provider.

        Args:
            symbol: Internal symbol

        Returns:
            MarketPrice tagged ``synthetic`` or ``fallback``
        """
        last_known = self._last_known.get(symbol)
        now_ms = time.time() * 1000

        if last_known is not None and now_ms - last_known.timestamp < self.last_known_max_age_ms:
            return self._create_synthetic_price(symbol, last_known)

        return self._create_base_price(symbol)

    def _spread(self, symbol: str) -> float:
        return instruments.get_live_spread(symbol) * (1 + self._rng.random() * 0.5)

    def _create_synthetic_price(self, symbol: str, last_known: MarketPrice) -> MarketPrice:
        movement = self._movement.get(symbol, 0.0)

        volatility = instruments.get_volatility(symbol)
        random_walk = (self._rng.random() - 0.5) * volatility
        mean_reversion = -movement * MEAN_REVERSION

        movement = movement + random_walk + mean_reversion
        self._movement[symbol] = movement

        decimals = instruments.get_decimal_places(symbol)
        synthetic = last_known.price * (1 + movement / 10000)
        if synthetic <= 0:
            synthetic = last_known.price
        spread = self._spread(symbol)

        price = round(synthetic, decimals)
        return replace(
            last_known,
            price=price,
            bid=round(synthetic - spread / 2, decimals),
            ask=round(synthetic + spread / 2, decimals),
            high=max(last_known.high, price),
            low=min(last_known.low, price),
            timestamp=int(time.time() * 1000),
            source=SOURCE_SYNTHETIC
        )

    def _create_base_price(self, symbol: str) -> MarketPrice:
        base_price = instruments.get_base_rate(symbol)
        volatility = instruments.get_volatility(symbol) / 1000
        random_factor = (self._rng.random() - 0.5) * 2 * volatility
        current = base_price * (1 + random_factor)

        decimals = instruments.get_decimal_places(symbol)
        spread = self._spread(symbol)
        change_percent = (self._rng.random() - 0.5) * 2
        change = current * (change_percent / 100)

        return MarketPrice(
            symbol=symbol,
            name=instruments.get_symbol_name(symbol),
            price=round(current, decimals),
            bid=round(current - spread / 2, decimals),
            ask=round(current + spread / 2, decimals),
            change=round(change, decimals),
            change_percent=round(change_percent, 2),
            high=round(current * 1.002, decimals),
            low=round(current * 0.998, decimals),
            volume=int(self._rng.integers(50000, 550000)),
            timestamp=int(time.time() * 1000),
            category=instruments.get_symbol_category(symbol),
            source=SOURCE_FALLBACK
        )

    def reset(self) -> None:
        """Forget every last-known price and accumulated drift."""
        self._last_known.clear()
        self._movement.clear()
