# app/processor/account_cache.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.processor.base import DestinationAccount

logger = logging.getLogger("settlement.reconcile")


@dataclass(frozen=True)
class _CacheEntry:
    account: DestinationAccount
    expires_at: float


class AccountCache:
    """
    Destination-account lookups with a TTL.

    Entries are validated on read; anything that is not a well-formed entry is
    dropped and refetched instead of being trusted.
    """

    def __init__(
        self,
        fetch: Callable[[str], DestinationAccount],
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, Any] = {}

    def _valid(self, account_id: str, entry: Any) -> Optional[DestinationAccount]:
        if not isinstance(entry, _CacheEntry):
            return None
        if not isinstance(entry.account, DestinationAccount):
            return None
        if entry.account.account_id != account_id:
            return None
        if not isinstance(entry.account.payouts_enabled, bool):
            return None
        return entry.account

    def get(self, account_id: str) -> DestinationAccount:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(account_id)

        if entry is not None:
            account = self._valid(account_id, entry)
            if account is None:
                logger.warning("account_cache discarding corrupt entry account=%s", account_id)
                with self._lock:
                    self._entries.pop(account_id, None)
            elif entry.expires_at > now:
                return account

        account = self._fetch(account_id)
        with self._lock:
            self._entries[account_id] = _CacheEntry(account=account, expires_at=now + self.ttl_seconds)
        return account

    def invalidate(self, account_id: Optional[str] = None) -> None:
        with self._lock:
            if account_id is None:
                self._entries.clear()
            else:
                self._entries.pop(account_id, None)
