from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

from orphansweep.errors import VerificationError
from orphansweep.models import is_guid
from orphansweep.session import AzureSession

logger = logging.getLogger("orphansweep.identity")

_RETRY_STATUSES = (429, 503, 504)


class GraphIdentityVerifier:
    """
    Answers "does this principal object id exist in the directory?".

    `exists()` returns True/False only for answers Graph actually gave
    (200 / 404). Everything else raises VerificationError so callers can tell
    "confirmed absent" from "query failed".
    """

    def __init__(
        self,
        session: AzureSession,
        *,
        cache: bool = False,
        max_retries: int = 4,
        backoff_base: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._use_cache = cache
        self._cache: dict[str, bool] = {}
        self._lock = threading.Lock()
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._sleep = sleep

    def exists(self, principal_id: str) -> bool:
        pid = (principal_id or "").strip().lower()
        if not is_guid(pid):
            raise VerificationError(principal_id, "not a valid object id")
        if self._use_cache:
            with self._lock:
                if pid in self._cache:
                    return self._cache[pid]

        found = self._query(pid)
        if self._use_cache:
            with self._lock:
                self._cache[pid] = found
        return found

    def _query(self, pid: str) -> bool:
        attempt = 0
        while True:
            try:
                r = self._session.graph_get(f"/v1.0/directoryObjects/{pid}", {"$select": "id"})
            except requests.RequestException as e:
                raise VerificationError(pid, f"Graph request failed: {e}") from e

            if r.status_code == 200:
                return True
            if r.status_code == 404:
                return False
            if r.status_code in _RETRY_STATUSES and attempt < self._max_retries:
                delay = self._retry_delay(r, attempt)
                logger.warning("Graph throttled verifying %s, sleeping %.1fs (attempt %d)", pid, delay, attempt + 1)
                self._sleep(delay)
                attempt += 1
                continue
            raise VerificationError(pid, f"Graph lookup failed ({r.status_code}): {r.text[:200]}", status_code=r.status_code)

    def _retry_delay(self, r: requests.Response, attempt: int) -> float:
        retry_after: Optional[str] = r.headers.get("Retry-After")
        if retry_after and retry_after.strip().isdigit():
            return min(float(retry_after.strip()), 60.0)
        return min(self._backoff_base * (2 ** attempt), 60.0)
