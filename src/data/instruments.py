"""Static instrument reference tables.

Symbol classes drive the spread, precision, volatility and naming used by the
live parser and the fallback provider. Symbols are internal identifiers such
as ``EURUSD``; the upstream provider uses ``EUR_USD`` style names.
"""

from typing import Dict, List, Optional

CONTRACT_SIZE = 100000

# Internal symbol -> upstream provider instrument
PROVIDER_SYMBOLS: Dict[str, str] = {
    # Major pairs
    'EURUSD': 'EUR_USD',
    'GBPUSD': 'GBP_USD',
    'USDJPY': 'USD_JPY',
    'AUDUSD': 'AUD_USD',
    'USDCAD': 'USD_CAD',
    'USDCHF': 'USD_CHF',
    'NZDUSD': 'NZD_USD',

    # Crosses
    'EURGBP': 'EUR_GBP',
    'EURJPY': 'EUR_JPY',
    'GBPJPY': 'GBP_JPY',

    # Metals
    'XAUUSD': 'XAU_USD',
    'XAGUSD': 'XAG_USD',

    # Energy
    'USOIL': 'WTICO_USD',
    'UKOIL': 'BCO_USD',

    # Indices
    'US30': 'US30_USD',
    'US500': 'SPX500_USD',
    'NAS100': 'NAS100_USD',
    'GER30': 'DE30_EUR',
    'UK100': 'UK100_GBP',
    'JPN225': 'JP225_USD',
}

# Typical live spread in price units
LIVE_SPREADS: Dict[str, float] = {
    'EURUSD': 0.00008, 'GBPUSD': 0.00012, 'USDJPY': 0.005,
    'AUDUSD': 0.0001, 'USDCAD': 0.00015, 'USDCHF': 0.00013,
    'NZDUSD': 0.00018, 'EURGBP': 0.00015, 'EURJPY': 0.01,
    'GBPJPY': 0.02, 'XAUUSD': 0.30, 'XAGUSD': 0.03,
    'USOIL': 0.03, 'UKOIL': 0.03, 'US30': 2, 'US500': 1,
    'NAS100': 1, 'GER30': 1, 'UK100': 1, 'JPN225': 8,
}
DEFAULT_LIVE_SPREAD = 0.0001

# Approximate real-world levels used when nothing better is known
BASE_RATES: Dict[str, float] = {
    'EURUSD': 1.08485, 'GBPUSD': 1.26492, 'USDJPY': 149.485,
    'AUDUSD': 0.65785, 'USDCAD': 1.37185, 'USDCHF': 0.91785,
    'NZDUSD': 0.59185, 'EURGBP': 0.85785, 'EURJPY': 162.285,
    'GBPJPY': 189.185, 'XAUUSD': 2025.35, 'XAGUSD': 24.845,
    'BTCUSD': 67500, 'ETHUSD': 3800, 'USOIL': 78.485,
    'US30': 37848.5, 'US500': 4784.8, 'NAS100': 16948.5,
    'UKOIL': 82.35, 'GER30': 16750.5, 'UK100': 7650.5, 'JPN225': 33450.0,
}
DEFAULT_BASE_RATE = 1.0

SYMBOL_NAMES: Dict[str, str] = {
    'EURUSD': 'Euro/US Dollar',
    'GBPUSD': 'British Pound/US Dollar',
    'USDJPY': 'US Dollar/Japanese Yen',
    'AUDUSD': 'Australian Dollar/US Dollar',
    'USDCAD': 'US Dollar/Canadian Dollar',
    'USDCHF': 'US Dollar/Swiss Franc',
    'NZDUSD': 'New Zealand Dollar/US Dollar',
    'EURGBP': 'Euro/British Pound',
    'EURJPY': 'Euro/Japanese Yen',
    'GBPJPY': 'British Pound/Japanese Yen',
    'XAUUSD': 'Gold/US Dollar',
    'XAGUSD': 'Silver/US Dollar',
    'BTCUSD': 'Bitcoin/US Dollar',
    'ETHUSD': 'Ethereum/US Dollar',
    'USOIL': 'US Crude Oil',
    'UKOIL': 'UK Brent Oil',
    'US30': 'Dow Jones 30',
    'US500': 'S&P 500',
    'NAS100': 'NASDAQ 100',
    'GER30': 'Germany 30',
    'UK100': 'FTSE 100',
    'JPN225': 'Nikkei 225',
}

INDEX_SYMBOLS = ('US30', 'US500', 'NAS100', 'GER30', 'UK100', 'JPN225')

# Daily swap in pips per lot, positive is a credit to the holder
SWAP_RATES: Dict[str, Dict[str, float]] = {
    'EURUSD': {'long': -0.3, 'short': 0.1},
    'GBPUSD': {'long': -0.4, 'short': 0.2},
    'USDJPY': {'long': 0.2, 'short': -0.5},
    'USDCHF': {'long': 0.1, 'short': -0.3},
    'AUDUSD': {'long': -0.2, 'short': 0.0},
    'USDCAD': {'long': 0.0, 'short': -0.2},
}
DEFAULT_SWAP_RATE = {'long': -0.5, 'short': -0.5}


def _is_crypto(symbol: str) -> bool:
    return 'BTC' in symbol or 'ETH' in symbol


def get_provider_symbol(symbol: str) -> Optional[str]:
    """Map an internal symbol to the upstream instrument, None if unsupported."""
    return PROVIDER_SYMBOLS.get(symbol.upper())


def is_supported(symbol: str) -> bool:
    return get_provider_symbol(symbol) is not None


def supported_symbols() -> List[str]:
    return list(PROVIDER_SYMBOLS.keys())


def get_decimal_places(symbol: str) -> int:
    if 'JPY' in symbol:
        return 3
    if symbol.startswith('XAU'):
        return 2
    if symbol.startswith('XAG'):
        return 3
    if _is_crypto(symbol):
        return 2
    if 'OIL' in symbol:
        return 3
    if symbol in INDEX_SYMBOLS:
        return 1
    return 5


def get_volatility(symbol: str) -> float:
    """Relative volatility weight per instrument class."""
    if _is_crypto(symbol):
        return 20
    if symbol.startswith('XAU') or symbol.startswith('XAG'):
        return 10
    if 'JPY' in symbol:
        return 8
    if 'OIL' in symbol:
        return 15
    return 5


def get_live_spread(symbol: str) -> float:
    return LIVE_SPREADS.get(symbol, DEFAULT_LIVE_SPREAD)


def get_symbol_name(symbol: str) -> str:
    return SYMBOL_NAMES.get(symbol, symbol)


def get_symbol_category(symbol: str) -> str:
    if _is_crypto(symbol):
        return 'Crypto'
    if symbol.startswith('XAU') or symbol.startswith('XAG'):
        return 'Metals'
    if 'OIL' in symbol:
        return 'Energy'
    if symbol in INDEX_SYMBOLS:
        return 'Indices'
    return 'Forex'


def get_base_rate(symbol: str) -> float:
    return BASE_RATES.get(symbol, DEFAULT_BASE_RATE)


def get_pip_value(symbol: str) -> float:
    """Price increment of one pip."""
    if 'JPY' in symbol:
        return 0.01
    return 0.0001


def get_swap_rates(symbol: str) -> Dict[str, float]:
    return SWAP_RATES.get(symbol, DEFAULT_SWAP_RATE)
