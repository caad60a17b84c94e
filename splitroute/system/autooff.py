"""
"ON for N minutes": a deadline after which the same services are turned OFF.

The deadline and the service list are stored in the config file, so they
survive a restart. The timer only wakes us up. Whoever wakes up re-reads the
config and decides whether the deadline has passed.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from splitroute.core.models import AppConfig

logger = logging.getLogger(__name__)

# how long to wait before trying again when another batch holds the latch
BUSY_RETRY_S = 15.0


def seconds_until_end_of_day(now: Optional[datetime] = None) -> float:
    """Seconds until 23:59 local time today, never negative."""
    now = now or datetime.now()
    end = now.replace(hour=23, minute=59, second=0, microsecond=0)
    return max(0.0, (end - now).total_seconds())


def set_auto_off(cfg: AppConfig, deadline: Optional[float], services: Optional[List[str]]) -> None:
    if deadline is None or not services:
        cfg.auto_off_deadline = None
        cfg.auto_off_services = None
        return
    cfg.auto_off_deadline = deadline
    cfg.auto_off_services = list(services)


def due_services(cfg: AppConfig, now: Optional[float] = None) -> Optional[List[str]]:
    """Services to turn off when the deadline has passed, else None."""
    if cfg.auto_off_deadline is None:
        return None
    if now is None:
        now = time.time()
    if now < cfg.auto_off_deadline:
        return None
    return list(cfg.auto_off_services or [])


class AutoOffTimer:
    """One pending wake-up; arming again replaces it."""

    def __init__(self, fire: Callable[[str], object]):
        self._fire = fire
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    @property
    def armed(self) -> bool:
        t = self._timer
        return t is not None and t.is_alive()

    def arm(self, delay_s: float, reason: str = "timer") -> None:
        with self._lock:
            self._cancel_locked()
            t = threading.Timer(max(delay_s, 0.0), self._fire, args=(reason,))
            t.daemon = True
            t.start()
            self._timer = t
        logger.debug("auto-off wake-up in %.0fs (%s)", delay_s, reason)

    def reschedule(self, cfg: AppConfig, now: Optional[float] = None) -> None:
        if cfg.auto_off_deadline is None:
            self.cancel()
            return
        if now is None:
            now = time.time()
        self.arm(cfg.auto_off_deadline - now)

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
