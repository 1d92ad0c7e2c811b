"""In-memory stores shared by the OAuth components.

Each store owns its map; callers only insert, look up and evict through the
methods below. Nothing is persisted, so every entry is lost on restart.
Swapping the backing dict for a key-value store with native TTL keeps the
same interface.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ExpiringStore:
    """Key -> value map where every entry carries a wall-clock expiry.

    Expired entries are treated as absent on read and reclaimed by an
    opportunistic sweep on insert, at most once per sweep_interval.
    """

    def __init__(self, ttl: float, clock: Clock = time.time, sweep_interval: float = 60.0):
        self.ttl = ttl
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._live(key) is not None

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, value: Any, expires_at: float = None) -> None:
        self._maybe_sweep()
        if expires_at is None:
            expires_at = self._clock() + self.ttl
        self._entries[key] = _Entry(value, expires_at)

    def get(self, key: str) -> Any:
        entry = self._live(key)
        return entry.value if entry else None

    def pop(self, key: str) -> Any:
        """Read and delete in one step. Expired counts as absent."""
        entry = self._entries.pop(key, None)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.value

    def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self._sweep_interval:
            removed = self.sweep()
            if removed:
                logger.debug(f"[STORE] Swept {removed} expired entries from {type(self).__name__}")


class PkceStore(ExpiringStore):
    """Pending authorization flows: state -> code_verifier (10 minute default)."""

    def __init__(self, ttl: float = 600, clock: Clock = time.time):
        super().__init__(ttl, clock)
        # Expired flows are remembered only so redeem() can log why it failed
        self._expired_flows: dict[str, float] = {}

    def remember(self, flow_id: str, verifier: str) -> None:
        self._expired_flows.pop(flow_id, None)
        self.put(flow_id, verifier)

    def redeem(self, flow_id: str) -> Optional[str]:
        """Return the verifier for flow_id exactly once, or None."""
        entry = self._entries.pop(flow_id, None)
        if entry is None:
            if self._expired_flows.pop(flow_id, None) is not None:
                logger.info("[PKCE] Flow expired before its callback arrived")
            else:
                logger.info("[PKCE] No verifier for flow (never issued or already redeemed)")
            return None
        if self._clock() >= entry.expires_at:
            logger.info("[PKCE] Flow expired before its callback arrived")
            return None
        return entry.value

    def sweep(self) -> int:
        now = self._clock()
        for flow_id, entry in self._entries.items():
            if now >= entry.expires_at:
                self._expired_flows[flow_id] = entry.expires_at
        # Bound the diagnostics map to one extra TTL window
        self._expired_flows = {
            flow_id: expired_at for flow_id, expired_at in self._expired_flows.items()
            if now - expired_at < self.ttl
        }
        return super().sweep()


class TokenCache(ExpiringStore):
    """Raw bearer token -> resolved Identity (5 minute default).

    Entries are only written after a sanctioned resolution (signature
    verification or a successful profile call).
    """

    def __init__(self, ttl: float = 300, clock: Clock = time.time):
        super().__init__(ttl, clock)

    def remember(self, token: str, identity: Any, token_expires_at: float = None) -> None:
        valid_until = self._clock() + self.ttl
        if token_expires_at is not None:
            valid_until = min(valid_until, token_expires_at)
        self.put(token, identity, expires_at=valid_until)


@dataclass
class AccessTokenRecord:
    access_token: str
    expires_at: float
    scope: str = ""


class AccessTokenStore(ExpiringStore):
    """Access tokens obtained through /callback, keyed by an opaque record id.

    Records are never refreshed.
    """

    def __init__(self, clock: Clock = time.time):
        super().__init__(ttl=3600, clock=clock)

    def add(self, access_token: str, expires_in: float, scope: str = "") -> str:
        record_id = secrets.token_urlsafe(16)
        expires_at = self._clock() + expires_in
        self.put(record_id, AccessTokenRecord(access_token, expires_at, scope), expires_at=expires_at)
        return record_id

    def lookup(self, record_id: str) -> Optional[AccessTokenRecord]:
        return self.get(record_id)
