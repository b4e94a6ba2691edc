import logging
import time
from typing import Callable, NamedTuple, Optional

log = logging.getLogger(__name__)

SESSION_MAX_AGE = 60 * 60 * 11  # seconds - gateway sessions are refreshed before 12h


class Session(NamedTuple):
    token: str  # Cookie header value, e.g. "AuthCookie=...; UserRecord=..."
    established_at: float


class SessionStore:
    """
    Holds the current session cookie string.

    Not thread safe: only the Authenticator writes to it, from the event loop.
    A session older than max_age is reported as absent.
    """

    def __init__(self, max_age: float = SESSION_MAX_AGE, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age
        self.clock = clock
        self._session: Optional[Session] = None

    def get(self) -> Optional[Session]:
        if self._session is None:
            return None
        if self.clock() - self._session.established_at >= self.max_age:
            log.debug('Session older than %ss - treating as expired' % self.max_age)
            return None
        return self._session

    def set(self, session: Session) -> None:
        self._session = session

    def clear(self) -> None:
        if self._session is not None:
            log.debug('Session cleared')
        self._session = None

    @property
    def token(self) -> Optional[str]:
        session = self.get()
        return session.token if session else None
