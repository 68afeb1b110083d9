from datetime import datetime, timedelta
from typing import Sequence

from lastmile.core.config import settings

# seconds to wait after the 1st, 2nd, ... failed attempt
BACKOFF_SCHEDULE: tuple[int, ...] = (10, 30, 60, 120, 300)


def backoff_seconds(attempt: int, schedule: Sequence[int] | None = None) -> int:
    """
    Delay after failed attempt number `attempt` (1-based).
    Fixed table, not a formula: past the end of the table the last slot is reused.
    """
    table = tuple(schedule or settings.callback_backoff_schedule or BACKOFF_SCHEDULE)
    idx = min(max(attempt, 1), len(table)) - 1
    return int(table[idx])


def next_attempt_at(now: datetime, attempt: int, schedule: Sequence[int] | None = None) -> datetime:
    return now + timedelta(seconds=backoff_seconds(attempt, schedule))
