"""Daily update timer."""
import asyncio
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Tuple

from dockhand.core.logger import get_logger

logger = get_logger(__name__)

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*(am|pm)?\s*$", re.IGNORECASE)


def parse_time(value: str) -> Tuple[int, int]:
    """Parse ``hh:mm[am|pm]`` into a 24 hour ``(hours, minutes)`` pair.

    Raises:
        ValueError: Malformed or out of range time
    """
    match = _TIME_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Time should conform to format: hh:mm[am|pm], got {value!r}")

    hours, minutes = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(3) or "").lower()

    if meridiem:
        if not 1 <= hours <= 12:
            raise ValueError(f"Hour out of range for 12 hour clock: {value!r}")
        hours = hours % 12 + (12 if meridiem == "pm" else 0)

    if hours > 23 or minutes > 59:
        raise ValueError(f"Time out of range: {value!r}")

    return hours, minutes


class UpdateTimer:
    """Invoke a callback once a day at a fixed local time.

    The callback may be a plain function or return an awaitable; awaitables
    are scheduled as tasks on the running loop.
    """

    def __init__(
        self,
        at: str,
        callback: Callable[[], Any],
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.hours, self.minutes = parse_time(at)
        self.callback = callback
        self.clock = clock
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        now = now or self.clock()
        run = now.replace(hour=self.hours, minute=self.minutes, second=0, microsecond=0)
        if run <= now:
            # Time has passed for today
            run += timedelta(days=1)
        return run

    def start(self) -> datetime:
        """(Re)arm the timer for the next occurrence."""
        self.cancel()
        now = self.clock()
        run = self.next_run(now)
        delay = (run - now).total_seconds()
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire)
        logger.debug(f"Next update sweep at {run:%Y-%m-%d %H:%M}")
        return run

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        logger.info("It's update time!")

        result = self.callback()
        if asyncio.iscoroutine(result):
            asyncio.get_running_loop().create_task(result)

        self.start()
