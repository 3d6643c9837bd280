"""
Tierkeeper: position lifecycle engine for tiered take-profit futures trades.
"""
__version__ = "0.3.0"
