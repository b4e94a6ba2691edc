import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from pypwbridge.exceptions import AuthError, TransportError
from pypwbridge.session import Session, SessionStore, SESSION_MAX_AGE
from pypwbridge.transport import Transport

log = logging.getLogger(__name__)

LOGIN_PATH = '/api/login/Basic'
MIN_AUTH_INTERVAL = 5  # seconds between two login attempts
LOGIN_INTERVAL = SESSION_MAX_AGE  # proactive re-login period


def extract_session_token(set_cookies: Iterable[str]) -> str:
    """
    Build the Cookie header value from Set-Cookie headers.

    Only the name=value part of each cookie is kept, attributes are dropped,
    and the pairs are joined with '; '.
    """
    pairs = [cookie.split(';')[0].strip() for cookie in set_cookies if cookie]
    return '; '.join(pair for pair in pairs if pair)


class Authenticator:
    """
    Exchanges the customer credentials for a session cookie.

    At most one login is in flight; concurrent callers share its outcome.
    Successive attempts are spaced by min_interval seconds.
    """

    def __init__(self, transport: Transport, store: SessionStore, base_url: str, username: str, password: str,
                 timeout: Optional[float] = None, min_interval: float = MIN_AUTH_INTERVAL,
                 refresh_interval: float = LOGIN_INTERVAL,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.transport = transport
        self.store = store
        self.base_url = base_url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.min_interval = min_interval
        self.refresh_interval = refresh_interval
        self.sleep = sleep
        self.attempts = 0  # number of login requests sent
        self._last_attempt: Optional[float] = None
        self._inflight: Optional[asyncio.Future] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def clock(self) -> Callable[[], float]:
        return self.store.clock

    async def authenticate(self) -> Session:
        """Login (or join the login already in progress) and return the new session."""
        if self._inflight is not None:
            log.debug('Authentication already in progress, waiting...')
            return await asyncio.shield(self._inflight)
        task = asyncio.ensure_future(self._rate_limited_login())
        self._inflight = task
        task.add_done_callback(self._login_done)
        return await asyncio.shield(task)

    def _login_done(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Outcome is delivered to every waiter through shield()
            task.exception()

    async def ensure_session(self) -> Session:
        session = self.store.get()
        if session is not None:
            return session
        log.debug('No session cookies, authenticating...')
        return await self.authenticate()

    def invalidate(self) -> None:
        """Forget the current session; the next request logs in again."""
        self.store.clear()

    async def refresh(self, stale_token: Optional[str]) -> Session:
        """
        Replace a session the gateway rejected.

        If another caller already replaced stale_token, that session is reused
        instead of logging in again.
        """
        current = self.store.get()
        if current is not None and current.token != stale_token:
            log.debug('Session already refreshed by another request')
            return current
        self.invalidate()
        return await self.authenticate()

    async def _rate_limited_login(self) -> Session:
        if self._last_attempt is not None:
            wait = self.min_interval - (self.clock() - self._last_attempt)
            if wait > 0:
                log.debug('Rate limiting: waiting %.1fs before authentication' % wait)
                await self.sleep(wait)
        self._last_attempt = self.clock()
        return await self._login()

    async def _login(self) -> Session:
        self.attempts += 1
        url = self.base_url + LOGIN_PATH
        payload = {"username": self.username, "password": self.password}
        try:
            r = await self.transport.send('POST', url, {'Content-Type': 'application/json'}, payload, self.timeout)
        except TransportError as exc:
            self.store.clear()
            log.error('Tesla Powerwall authentication failed: %s' % exc)
            raise AuthError(f"Unable to reach login endpoint: {exc}") from exc
        if not r.ok:
            self.store.clear()
            log.error('Tesla Powerwall authentication failed: HTTP %s %s' % (r.status, r.reason))
            raise AuthError(f"Login rejected - HTTP {r.status}: {r.reason}")
        token = extract_session_token(r.set_cookies)
        if not token:
            self.store.clear()
            log.warning('No session cookies received from login response')
            raise AuthError("Login response did not include a session cookie")
        session = Session(token=token, established_at=self.clock())
        self.store.set(session)
        log.debug('Tesla Powerwall authentication successful')
        return session

    def start(self) -> None:
        """Login now in the background and again every refresh_interval seconds."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._login_loop())

    async def _login_loop(self) -> None:
        try:
            await self.authenticate()
        except AuthError as exc:
            log.error('Initial authentication failed: %s' % exc)
        while True:
            await self.sleep(self.refresh_interval)
            try:
                await self.authenticate()
            except AuthError as exc:
                log.error('Periodic authentication failed: %s' % exc)

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                # Expected when cancelling the login loop
                pass
        inflight, self._inflight = self._inflight, None
        if inflight is not None and not inflight.done():
            inflight.cancel()
