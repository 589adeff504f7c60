"""
SMC - Smart Money Concepts Trading Research

Backtesting tools for structure-based (order block, fair value gap,
liquidity) intraday strategies on FX metals and crypto CFDs.
"""

__version__ = '0.1.0'
