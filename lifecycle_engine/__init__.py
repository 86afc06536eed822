"""
Trade Lifecycle Management Engine
"""
__version__ = "0.1.0"
