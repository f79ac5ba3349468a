"""Time source shared by the quota ledger and the webhook engine"""

import time
from datetime import datetime, timezone


class Clock:
    """Wall-clock time in milliseconds since the epoch"""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now(self) -> datetime:
        """Current time as an aware UTC datetime"""
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)

    def isoformat(self) -> str:
        return self.now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


system_clock = Clock()
