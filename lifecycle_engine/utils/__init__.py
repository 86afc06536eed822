"""
Utility functions for the Trade Lifecycle Engine
"""
from .symbol_utils import normalize_symbol, get_display_symbol, price_to_pips

__all__ = ['normalize_symbol', 'get_display_symbol', 'price_to_pips']
