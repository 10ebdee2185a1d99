"""Outbound send-rate limiting.

A cooldown starts after each successfully delivered reply. The scope is an
explicit setting: ``global`` (one reply per interval across all
conversations) or ``per_address`` (one reply per interval per recipient).
"""

import time
from typing import Callable, Optional

from kondo_agent.logging_config import get_logger

logger = get_logger("rate_limiter")

SCOPE_GLOBAL = "global"
SCOPE_PER_ADDRESS = "per_address"
RATE_LIMIT_SCOPES = (SCOPE_GLOBAL, SCOPE_PER_ADDRESS)

_GLOBAL_KEY = "*"


class RateLimiter:
    def __init__(
        self,
        interval_seconds: float = 60.0,
        scope: str = SCOPE_GLOBAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if scope not in RATE_LIMIT_SCOPES:
            raise ValueError(f"Unknown rate limit scope: {scope}")
        self.interval = interval_seconds
        self.scope = scope
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    def _key(self, address: Optional[str]) -> str:
        if self.scope == SCOPE_GLOBAL or not address:
            return _GLOBAL_KEY
        return address

    def remaining_seconds(self, address: Optional[str] = None) -> float:
        last = self._last_sent.get(self._key(address))
        if last is None:
            return 0.0
        return max(0.0, self.interval - (self._clock() - last))

    def is_allowed(self, address: Optional[str] = None) -> bool:
        return self.remaining_seconds(address) <= 0

    def blocks_all(self) -> bool:
        """True when a global cooldown is active and the whole tick must be skipped."""
        return self.scope == SCOPE_GLOBAL and not self.is_allowed()

    def cooling_addresses(self) -> list[str]:
        """Recipients still cooling down (per_address scope only)."""
        if self.scope != SCOPE_PER_ADDRESS:
            return []
        now = self._clock()
        cooling = [key for key, last in self._last_sent.items() if now - last < self.interval]
        # forget expired entries so the map does not grow with every recipient
        for key in [key for key in self._last_sent if key not in cooling]:
            del self._last_sent[key]
        return cooling

    def record(self, address: Optional[str] = None) -> None:
        self._last_sent[self._key(address)] = self._clock()
