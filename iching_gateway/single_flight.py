"""
Single-Flight Gate — admission control for the expensive provider path.

``SingleFlightGate`` admits one request at a time system-wide.  It exists to
absorb double-clicks and rapid resubmits from a client UI, so two different
users asking different questions at the same moment will see one of them
rejected as busy.

``KeyedSingleFlightGate`` holds one token per fingerprint instead, letting
distinct readings proceed concurrently while still rejecting duplicates.
"""

from __future__ import annotations

import threading


class SingleFlightGate:
    """One global in-flight token.  ``key`` is accepted and ignored."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held = False

    def try_acquire(self, key: str | None = None) -> bool:
        with self._lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self, key: str | None = None):
        with self._lock:
            self._held = False

    @property
    def busy(self) -> bool:
        return self._held


class KeyedSingleFlightGate:
    """One in-flight token per fingerprint."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, key: str | None = None) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str | None = None):
        with self._lock:
            self._held.discard(key)

    @property
    def busy(self) -> bool:
        return bool(self._held)
