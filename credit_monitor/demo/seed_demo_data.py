# credit_monitor/demo/seed_demo_data.py

import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from credit_monitor.storage.db import DEFAULT_DB_PATH
from credit_monitor.storage.repository import BalanceRepository


def seed_demo_data(
    db_path: str = DEFAULT_DB_PATH,
    hours: int = 24,
    start_balance: int = 3000,
    seed: Optional[int] = None,
) -> int:
    """Write one snapshot per 15 minutes over the last `hours`.

    Balance drifts down with busier afternoons and a single top-up
    halfway through, so every analytics field has something to show.

    Returns:
        Number of snapshots written
    """
    rng = random.Random(seed)
    repository = BalanceRepository(db_path)
    repository.initialize_schema()

    now = datetime.now(timezone.utc).replace(second=0, microsecond=0)
    start = now - timedelta(hours=hours)
    steps = hours * 4
    balance = start_balance

    for i in range(steps + 1):
        timestamp = start + timedelta(minutes=15 * i)
        repository.record_balance(balance, source="demo", timestamp=timestamp)

        busy = 12 <= timestamp.hour < 18
        balance = max(0, balance - rng.randint(5, 25 if busy else 10))
        if i == steps // 2:
            balance += 500

    return steps + 1


if __name__ == "__main__":
    count = seed_demo_data()
    print(f"Demo balance history inserted ({count} snapshots)")
