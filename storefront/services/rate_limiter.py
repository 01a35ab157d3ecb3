"""
Sliding-window attempt counter persisted as a JSON file.

Each bucket is keyed by ``sha256("<action>:<identifier>")`` and holds the
timestamps of recent attempts. Suited to a single low-traffic deployment;
separate processes writing the same file may lose an attempt record.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Union

from storefront.errors import TooManyAttempts
from storefront.observability import increment_counter

# Housekeeping drops any attempt older than this, whatever its bucket's window
HOUSEKEEPING_MAX_AGE_SECONDS = 3600

Buckets = Dict[str, List[float]]


def bucket_key(identifier: str, action: str) -> str:
    return hashlib.sha256(f"{action}:{identifier}".encode("utf-8")).hexdigest()


def client_identifier(request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.remote_addr or "unknown"


class RateLimiter:
    def __init__(
        self,
        store_path: Union[str, Path],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store_path = Path(store_path)
        self.clock = clock
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def check_limit(
        self,
        identifier: str,
        action: str,
        max_attempts: int = 5,
        window_seconds: int = 300,
    ) -> bool:
        """
        Record an attempt and report whether it is allowed.

        A denied attempt is not recorded, so a client that keeps hammering
        is let back in once its earlier attempts leave the window.
        """
        key = bucket_key(identifier, action)
        with self._lock:
            now = self.clock()
            buckets = self._load()
            cutoff = now - window_seconds
            attempts = [ts for ts in buckets.get(key, []) if ts > cutoff]

            if len(attempts) >= max_attempts:
                buckets[key] = attempts
                self._save(self._housekeep(buckets, now))
                return False

            attempts.append(now)
            buckets[key] = attempts
            self._save(self._housekeep(buckets, now))
            return True

    def enforce(
        self,
        identifier: str,
        action: str,
        max_attempts: int = 5,
        window_seconds: int = 300,
    ) -> None:
        if not self.check_limit(identifier, action, max_attempts, window_seconds):
            increment_counter("rate_limit_exceeded_total", labels={"action": action})
            self.logger.warning("Rate limit exceeded for action %s", action)
            raise TooManyAttempts(retry_after=window_seconds)

    def clear_limit(self, identifier: str, action: str) -> None:
        key = bucket_key(identifier, action)
        with self._lock:
            buckets = self._load()
            if buckets.pop(key, None) is not None:
                self._save(self._housekeep(buckets, self.clock()))

    def attempts(self, identifier: str, action: str, window_seconds: int = 300) -> int:
        """Attempts currently inside the window (read only)."""
        key = bucket_key(identifier, action)
        with self._lock:
            cutoff = self.clock() - window_seconds
            return sum(1 for ts in self._load().get(key, []) if ts > cutoff)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    @staticmethod
    def _housekeep(buckets: Buckets, now: float) -> Buckets:
        cutoff = now - HOUSEKEEPING_MAX_AGE_SECONDS
        pruned: Buckets = {}
        for key, stamps in buckets.items():
            kept = [ts for ts in stamps if ts > cutoff]
            if kept:
                pruned[key] = kept
        return pruned

    def _load(self) -> Buckets:
        try:
            with self.store_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            # A corrupt store only loses throttle history
            self.logger.warning("Rate limit store unreadable, starting fresh: %s", exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(key): [float(ts) for ts in stamps if isinstance(ts, (int, float))]
            for key, stamps in data.items()
            if isinstance(stamps, list)
        }

    def _save(self, buckets: Buckets) -> None:
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.store_path.parent),
            prefix=self.store_path.name,
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(buckets, handle)
            os.replace(tmp_path, self.store_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
