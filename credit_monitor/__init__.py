"""
Credit Monitor.

Tracks a billing backend's credit balance, keeps its history and raises
alerts before the credits run out.
"""

__version__ = "0.1.0"
