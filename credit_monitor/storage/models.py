"""
Data models for storage layer.

Defines the persisted balance snapshots and derived usage records.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BalanceSnapshot:
    """A single timestamped balance reading.

    Snapshots are append-only: once written they are never modified,
    only removed by retention pruning.
    """
    id: str
    amount: int
    timestamp: datetime
    source: str = "scraper"

    def __post_init__(self):
        """Validate the amount is a non-negative integer."""
        if self.amount < 0:
            raise ValueError("amount cannot be negative")


@dataclass(frozen=True)
class UsageRecord:
    """Consumption derived from two consecutive snapshots.

    Only recorded when the balance went down, so usage_amount is always
    positive and equals start_balance - end_balance.
    """
    id: str
    start_balance: int
    end_balance: int
    usage_amount: int
    duration_minutes: int
    timestamp: datetime

    def __post_init__(self):
        """Validate usage invariants."""
        if self.usage_amount <= 0:
            raise ValueError("usage_amount must be > 0")
        if self.usage_amount != self.start_balance - self.end_balance:
            raise ValueError("usage_amount must equal start_balance - end_balance")
        if self.duration_minutes < 1:
            raise ValueError("duration_minutes must be >= 1")

    @property
    def rate_per_hour(self) -> float:
        """Usage rate of this record scaled to one hour."""
        return (self.usage_amount / self.duration_minutes) * 60.0
