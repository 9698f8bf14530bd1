from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from .checkout import CheckoutSession

logger = logging.getLogger(__name__)


class CheckoutStore:
    """In-process checkout sessions keyed by id.

    Sessions idle for longer than ``ttl`` seconds are dropped on access.
    """

    def __init__(self, ttl: int, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, CheckoutSession] = {}

    def add(self, session: CheckoutSession) -> CheckoutSession:
        self.purge()
        self._sessions[session.id] = session
        return session

    def get(self, checkout_id: str) -> Optional[CheckoutSession]:
        session = self._sessions.get(checkout_id)
        if session is None:
            return None
        if self._expired(session):
            self._sessions.pop(checkout_id, None)
            return None
        return session

    def purge(self) -> int:
        stale = [key for key, session in self._sessions.items() if self._expired(session)]
        for key in stale:
            self._sessions.pop(key, None)
        if stale:
            logger.info("CHECKOUT_PURGED count=%d", len(stale))
        return len(stale)

    def _expired(self, session: CheckoutSession) -> bool:
        return self.ttl > 0 and self._clock() - session.updated_at > self.ttl

    def __len__(self) -> int:
        return len(self._sessions)
