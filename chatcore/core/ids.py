from __future__ import annotations

import re
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

CROCKFORD_BASE32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")

_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1


def is_ulid(value: Optional[str]) -> bool:
    return bool(value) and ULID_RE.match(value) is not None


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_BASE32[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


class UlidGenerator:
    """Time-ordered ULIDs, monotonic inside one millisecond.

    Two ids minted in the same millisecond differ by an increment of the
    random part, so lexicographic order always equals mint order within a
    process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_rand = 0

    def new(self, now_ms: Optional[int] = None) -> str:
        ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
        with self._lock:
            if ms <= self._last_ms:
                ms = self._last_ms
                rand = self._last_rand + 1
                if rand > _RANDOM_MAX:
                    ms += 1
                    rand = secrets.randbits(_RANDOM_BITS - 1)
            else:
                # 留出递增空间
                rand = secrets.randbits(_RANDOM_BITS - 1)
            self._last_ms = ms
            self._last_rand = rand
        return _encode(ms, 10) + _encode(rand, 16)


def utcnow() -> datetime:
    """Naive UTC, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_rfc3339(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MonotonicClock:
    """Wall clock that never returns a value <= the previous one."""

    _TICK = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = utcnow()
        with self._lock:
            if self._last is not None and current <= self._last:
                current = self._last + self._TICK
            self._last = current
        return current


ulid_generator = UlidGenerator()
clock = MonotonicClock()
