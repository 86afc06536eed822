"""
Symbol Normalization Utilities

Converts signal symbols into the formats used by the price feed, and gives
pip sizes for reporting P&L in pips.

## SYMBOL FORMATS ##

### Signal issuer (inbound)
- Forex: "EURUSD", "USDJPY"
- Metals: "XAUUSD", "XAGUSD"
- Crypto: "BTCUSDT", "BTCUSDT.P" (perpetual)

### CCXT Library (price oracle)
- Spot: "BTC/USDT", "EUR/USD"
- Perpetuals: "BTC/USDT:USDT"

## PIP SIZES ##
- JPY quoted pairs: 0.01
- Gold (XAU): 0.1
- Silver (XAG): 0.01
- Everything else: 0.0001
"""
from typing import Tuple

# Common quote currencies (longer matches first)
QUOTE_CURRENCIES = ['USDT', 'USDC', 'BUSD', 'USD', 'EUR', 'GBP', 'JPY', 'CHF', 'CAD', 'AUD', 'NZD', 'BTC', 'ETH']

PERPETUAL_SUFFIXES = ['.P', '.PERP', '-PERP', 'PERP']


def normalize_symbol(symbol: str) -> Tuple[str, str, bool]:
    """
    Normalize a signal symbol to CCXT format

    Returns:
        Tuple of (ccxt_symbol, base_asset, is_perpetual)

    Examples:
        "EURUSD" → ("EUR/USD", "EUR", False)
        "BTCUSDT.P" → ("BTC/USDT:USDT", "BTC", True)
        "BTC/USDT" → ("BTC/USDT", "BTC", False)
    """
    original = symbol
    symbol = symbol.strip().upper()

    if '/' in symbol:
        base = symbol.split('/')[0]
        return symbol, base, ':' in symbol

    is_perpetual = False
    for suffix in PERPETUAL_SUFFIXES:
        if symbol.endswith(suffix):
            symbol = symbol[:-len(suffix)]
            is_perpetual = True
            break

    base = None
    quote = None
    for quote_currency in QUOTE_CURRENCIES:
        if symbol.endswith(quote_currency) and len(symbol) > len(quote_currency):
            quote = quote_currency
            base = symbol[:-len(quote_currency)]
            break

    if not base or not quote:
        raise ValueError(f"Unable to parse symbol: {original}")

    if is_perpetual:
        ccxt_symbol = f"{base}/{quote}:{quote}"
    else:
        ccxt_symbol = f"{base}/{quote}"

    return ccxt_symbol, base, is_perpetual


def get_display_symbol(symbol: str) -> str:
    """Clean display symbol for logs ("BTC/USDT:USDT" → "BTCUSDT")"""
    symbol = symbol.strip().upper()
    if '/' in symbol:
        return symbol.split(':')[0].replace('/', '')
    for suffix in PERPETUAL_SUFFIXES:
        if symbol.endswith(suffix):
            return symbol[:-len(suffix)]
    return symbol


def pip_size(symbol: str) -> float:
    """Pip size for a symbol"""
    display = get_display_symbol(symbol)
    if 'JPY' in display:
        return 0.01
    if display.startswith('XAU'):
        return 0.1
    if display.startswith('XAG'):
        return 0.01
    return 0.0001


def price_to_pips(symbol: str, price_diff: float) -> float:
    """Convert a price difference into pips"""
    return price_diff / pip_size(symbol)
