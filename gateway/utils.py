from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time; the default clock for all services."""
    return datetime.now(timezone.utc)
