from datetime import datetime, timedelta, timezone


class SystemClock:
    """Wall clock in naive UTC, matching how timestamps are stored."""

    def now(self):
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock pinned to a given instant; tests move it with ``advance``."""

    def __init__(self, current=None):
        self.current = current or datetime(2025, 1, 15, 12, 0, 0)

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, current):
        self.current = current
