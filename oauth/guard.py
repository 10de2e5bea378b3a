"""Failed-password tracking and lockout for the consent endpoint.

Records are keyed by client IP. The IP comes from X-Forwarded-For when
TRUST_PROXY_HEADERS is enabled, so the server must sit behind a reverse
proxy that overwrites that header; otherwise any caller can pick its own
lockout key.

Password checks from one IP run one at a time (see AbuseGuard.attempt), so
concurrent submissions cannot all pass the lockout check before the first
failure is recorded.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

import anyio
from fastapi import Request

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_SECONDS = 600  # 10 minutes


@dataclass
class FailedAttemptRecord:
    ip: str
    count: int = 0
    locked_until: Optional[float] = None
    last_failed_at: Optional[float] = None


@dataclass
class _AttemptLock:
    lock: anyio.Lock
    users: int = 0


def get_client_ip(request: Request, trust_proxy_headers: bool = True) -> str:
    """Client IP, preferring the proxy-forwarded header over the peer address."""
    if trust_proxy_headers:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip", "")
        if real_ip:
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class AbuseGuard:
    """Per-IP failed attempt counter with a timed lockout."""

    def __init__(
        self,
        max_attempts: int = MAX_FAILED_ATTEMPTS,
        lockout_seconds: float = LOCKOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.clock = clock
        self._records: dict[str, FailedAttemptRecord] = {}
        self._attempt_locks: dict[str, _AttemptLock] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, ip: str) -> Optional[FailedAttemptRecord]:
        return self._records.get(ip)

    @asynccontextmanager
    async def attempt(self, ip: str):
        """Hold the per-IP lock across lockout check, password check and record.

        The lock entry is dropped once no request for that IP holds or waits
        for it.
        """
        entry = self._attempt_locks.get(ip)
        if entry is None:
            entry = self._attempt_locks[ip] = _AttemptLock(anyio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._attempt_locks[ip]

    def is_locked_out(self, ip: str) -> Optional[float]:
        """Remaining lockout in seconds, or None if the IP may try again.

        An elapsed lockout purges the record, so the IP starts over with a
        fresh attempt budget.
        """
        record = self._records.get(ip)
        if record is None or record.locked_until is None:
            return None

        remaining = record.locked_until - self.clock()
        if remaining > 0:
            return remaining

        del self._records[ip]
        return None

    def record_failed_attempt(self, ip: str) -> FailedAttemptRecord:
        record = self._records.setdefault(ip, FailedAttemptRecord(ip=ip))
        record.count += 1
        record.last_failed_at = self.clock()
        # An active lockout is never extended by further failures
        if record.locked_until is None and record.count >= self.max_attempts:
            record.locked_until = self.clock() + self.lockout_seconds
            logger.warning(f"[LOCKOUT] {ip} locked out after {record.count} failed attempts")
        return record

    def remaining_attempts(self, ip: str) -> int:
        record = self._records.get(ip)
        used = record.count if record else 0
        return max(self.max_attempts - used, 0)

    def clear_on_success(self, ip: str) -> None:
        self._records.pop(ip, None)

    def sweep(self) -> int:
        """Drop elapsed lockouts and idle unlocked records. Returns the number removed.

        An unlocked record is idle once its last failure is older than the
        lockout window.
        """
        now = self.clock()
        stale = [ip for ip, record in self._records.items() if self._is_stale(record, now)]
        for ip in stale:
            del self._records[ip]
        return len(stale)

    def _is_stale(self, record: FailedAttemptRecord, now: float) -> bool:
        if record.locked_until is not None:
            return record.locked_until <= now
        return record.last_failed_at is None or now - record.last_failed_at > self.lockout_seconds

    def clear(self) -> None:
        self._records.clear()
        self._attempt_locks.clear()


abuse_guard = AbuseGuard()
