import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from .log import SERVICE_LOGGER

log = logging.getLogger(SERVICE_LOGGER)


@dataclass
class Fault:
    key: str
    message: str
    since: datetime
    last_update: datetime
    count: int = 1


class FaultTracker:
    """
    Active fault set with log-on-change.

    A fault is logged when first raised or when its message changes; repeats
    only bump the counter. Clearing a fault logs once.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._lock = threading.Lock()
        self._faults: Dict[str, Fault] = {}
        self._log = logger or log

    def raise_fault(self, key: str, message: str, level: int = logging.ERROR) -> None:
        now = datetime.now()
        with self._lock:
            f = self._faults.get(key)
            if f is None:
                self._faults[key] = Fault(key=key, message=message, since=now, last_update=now)
                changed = True
            else:
                changed = f.message != message
                f.message = message
                f.last_update = now
                f.count += 1
        if changed:
            self._log.log(level, f"[FAULT] {key} {message}")

    def clear_fault(self, key: str) -> None:
        with self._lock:
            f = self._faults.pop(key, None)
        if f is not None:
            self._log.info(f"[FAULT-CLEAR] {key} resolved after {f.count} occurrence(s) (was: {f.message})")

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._faults

    def count(self, key: str) -> int:
        with self._lock:
            f = self._faults.get(key)
            return f.count if f else 0

    def active(self) -> List[Fault]:
        with self._lock:
            return sorted(self._faults.values(), key=lambda f: f.since)
