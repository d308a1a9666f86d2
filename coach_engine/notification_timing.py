"""
Notification Timing
===================

Delivery-time computation and volume control for proactive notifications:
- Immediate, fixed delay, or the next occurrence of a preferred window
- Do-not-disturb windows defer delivery to the window's end
- Rolling 24h per-user cap; urgent notifications always pass

Times are "HH:MM" strings. Windows may wrap midnight ("22:00"-"07:00").
Days of week use Python's weekday() numbering (Monday = 0).
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence
import logging
import threading

from coach_engine.config import check_hhmm

logger = logging.getLogger(__name__)


def parse_hhmm(value: str) -> time:
    hours, minutes = check_hhmm(value).split(":")
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class TimeWindow:
    start: str
    end: str
    days_of_week: Optional[Sequence[int]] = None

    def __post_init__(self):
        # Normalizes and validates, raises ValueError on bad input
        object.__setattr__(self, "start", check_hhmm(self.start))
        object.__setattr__(self, "end", check_hhmm(self.end))

    @property
    def wraps(self) -> bool:
        return self.start > self.end

    def contains(self, when: datetime) -> bool:
        """start <= t < end, honouring midnight wrap and weekday filters."""
        t = when.strftime("%H:%M")
        if not self.wraps:
            inside, day = self.start <= t < self.end, when
        elif t >= self.start:
            inside, day = True, when
        else:
            # After midnight: the window opened the previous day
            inside, day = t < self.end, when - timedelta(days=1)

        if not inside:
            return False
        return self.days_of_week is None or day.weekday() in self.days_of_week

    def end_after(self, when: datetime) -> datetime:
        """The moment this window closes, given `when` lies inside it."""
        end = datetime.combine(when.date(), parse_hhmm(self.end))
        if end <= when:
            end += timedelta(days=1)
        return end


@dataclass
class DeliveryTiming:
    """When a rule's notification should be delivered."""
    immediate: bool = True
    delay_minutes: Optional[int] = None
    preferred_window: Optional[TimeWindow] = None
    respect_user_preferences: bool = True


def scheduled_time(timing: DeliveryTiming, now: datetime) -> datetime:
    """
    Immediate -> now; delay -> now + delay; preferred window -> now when
    inside it, today's start when before it, tomorrow's start when after.
    """
    if timing.immediate:
        return now
    if timing.delay_minutes:
        return now + timedelta(minutes=timing.delay_minutes)

    window = timing.preferred_window
    if window is not None:
        if window.contains(now):
            return now
        start = datetime.combine(now.date(), parse_hhmm(window.start))
        if now < start:
            return start
        return start + timedelta(days=1)

    return now


def defer_for_dnd(when: datetime, windows: Iterable[TimeWindow]) -> datetime:
    """Push `when` to the end of any do-not-disturb window it falls into."""
    windows = list(windows)
    # Bounded: each pass can only move past one window
    for _ in range(len(windows) + 1):
        blocking = next((w for w in windows if w.contains(when)), None)
        if blocking is None:
            return when
        when = blocking.end_after(when)
        logger.debug(f"Delivery deferred to {when:%Y-%m-%d %H:%M} by do-not-disturb {blocking.start}-{blocking.end}")
    return when


class DeliveryLimiter:
    """Per-user rolling 24h notification cap."""

    WINDOW = timedelta(hours=24)

    def __init__(self, daily_cap: int = 10, clock: Callable[[], datetime] = datetime.now):
        self.daily_cap = daily_cap
        self._clock = clock
        self._sent: Dict[str, Deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, user_id: str, now: datetime) -> Deque[datetime]:
        sent = self._sent[user_id]
        while sent and now - sent[0] >= self.WINDOW:
            sent.popleft()
        return sent

    def allow(self, user_id: str, priority: str) -> bool:
        """Record and allow a notification, or refuse it once the cap is hit."""
        with self._lock:
            now = self._clock()
            sent = self._prune(user_id, now)
            if priority != "urgent" and len(sent) >= self.daily_cap:
                return False
            sent.append(now)
            return True

    def sent_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._prune(user_id, self._clock()))


def windows_from_config(pairs: List[tuple]) -> List[TimeWindow]:
    return [TimeWindow(start, end) for start, end in pairs]
