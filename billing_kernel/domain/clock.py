"""
Clock -- Deterministic time abstraction and the business calendar.

Responsibility:
    Provides an injectable clock interface so that domain and service code
    never call ``datetime.now()`` or ``date.today()`` directly, plus the
    ``BusinessCalendar`` that turns an instant into the calendar date the
    business considers "today".

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Invariants enforced:
    - Every "today" used for scheduling, promotion windows and invoice
      dating is produced by ``BusinessCalendar.today()``.  There is no
      second source.
    - "today" is evaluated in the configured business timezone, never in
      the host timezone.

Failure modes:
    - ZoneInfoNotFoundError if the configured timezone name is unknown.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


class Clock(ABC):
    """Injected time source.  Services never read the host clock directly."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware."""

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)


class SystemClock(Clock):
    """Wall-clock time for the sweep script."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock that only moves when told to.

    ``advance()``/``advance_days()`` move it forward, ``set_time()`` jumps
    to an instant and ``tick()`` steps one second.  Defaults to
    2024-01-01 12:00 UTC.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = time

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int = 1) -> None:
        self._current += timedelta(days=days)

    def tick(self) -> datetime:
        self.advance(1)
        return self._current


class BusinessCalendar:
    """
    The single source of "today" for billing decisions.

    Contract:
        ``today()`` converts the clock's current instant into the business
        timezone and returns its calendar date.

    Guarantees:
        - Two calls in the same business day return the same ``date``
          regardless of the host timezone.
    """

    def __init__(self, clock: Clock, timezone_name: str = "UTC"):
        self._clock = clock
        self._tz = ZoneInfo(timezone_name)
        self.timezone_name = timezone_name

    @property
    def clock(self) -> Clock:
        return self._clock

    def now(self) -> datetime:
        """Current instant expressed in the business timezone."""
        return self._clock.now_utc().astimezone(self._tz)

    def today(self) -> date:
        return self.now().date()

    def days_from_today(self, days: int) -> date:
        return self.today() + timedelta(days=days)
