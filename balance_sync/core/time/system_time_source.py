from datetime import datetime, timezone

from balance_sync.core.time.time_source import TimeSource


class SystemTimeSource(TimeSource):
    """Wall clock in UTC. Used whenever no clock is injected."""
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
