"""In-memory stores for OAuth authorization codes and access tokens.

Nothing here survives a restart. Each store is an expiring key -> entry map
owned by the authorization server; entries carry an absolute ``expires_at``
(unix seconds) and are treated as expired once ``expires_at <= now``. The
same predicate drives on-use checks and the periodic sweep.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    expires_at: float
    code_challenge: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


EntryT = TypeVar("EntryT", AuthorizationCode, AccessToken)


class ExpiringStore(Generic[EntryT]):
    """Thread-safe key -> entry map with expiry-based eviction."""

    def __init__(self, now_fn: Callable[[], float] = time.time):
        self._now = now_fn
        self._entries: Dict[str, EntryT] = {}
        self._lock = threading.Lock()

    def insert(self, key: str, entry: EntryT) -> None:
        with self._lock:
            self._entries[key] = entry

    def lookup(self, key: str) -> Optional[EntryT]:
        """Return the live entry for ``key``; expired entries read as absent."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._now()):
            return None
        return entry

    def remove(self, key: str) -> Optional[EntryT]:
        """Pop ``key`` and return whatever was stored, expired or not."""
        with self._lock:
            return self._entries.pop(key, None)

    def sweep_expired(self) -> int:
        now = self._now()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
