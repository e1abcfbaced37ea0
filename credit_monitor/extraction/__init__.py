"""
Balance extraction for Credit Monitor.

A cascade of strategies that turns a credential into the current balance.
"""

from .engine import BalanceExtractor, ExtractionResult
from .patterns import DEFAULT_PATTERNS, PatternTable

__all__ = ["BalanceExtractor", "ExtractionResult", "PatternTable", "DEFAULT_PATTERNS"]
