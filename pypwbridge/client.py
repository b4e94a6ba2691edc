import asyncio
import functools
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from dateutil import parser as dateparser
from pydantic import BaseModel, Field

from pypwbridge.auth import Authenticator, LOGIN_PATH, LOGIN_INTERVAL, MIN_AUTH_INTERVAL
from pypwbridge.cache import ResponseCache
from pypwbridge.derived import PowerSample, SystemStatus, GridStatus, battery_level, is_grid_connected
from pypwbridge.exceptions import (PowerwallError, TransportError, AuthError, HttpStatusError, RateLimitError,
                                   InvalidConfigurationParameter)
from pypwbridge.session import SessionStore
from pypwbridge.transport import Transport, TransportResponse, DEFAULT_TIMEOUT

log = logging.getLogger(__name__)

SOE_PATH = '/api/system_status/soe'
AGGREGATES_PATH = '/api/meters/aggregates'
GRID_STATUS_PATH = '/api/system_status/grid_status'
SITEMASTER_PATH = '/api/sitemaster'

DEFAULT_RETRY_AFTER = 30  # seconds to back off on 429 without a usable retry-after header
MAX_RETRY_AFTER = 300  # longest back-off honored from a retry-after header
DEFAULT_CACHE_EXPIRE = 5  # seconds

HOST_REGEX = re.compile(r'^[A-Za-z0-9.\-]+$|^\[?[0-9A-Fa-f:]+]?$')


class ConnectionReport(BaseModel):
    """Outcome of an on-demand connection test (configuration UI "Test" button)."""
    success: bool
    message: str
    battery_level: Optional[int] = None
    grid_status: Optional[str] = None  # "Connected" or "Disconnected"
    power_flow: Optional[Dict[str, int]] = None  # load, solar, grid, battery in W
    errors: List[str] = Field(default_factory=list)


def retry_after_seconds(response: TransportResponse, default: float = DEFAULT_RETRY_AFTER) -> float:
    """
    Seconds to wait from a retry-after header given as delta-seconds or HTTP-date.

    The result is clamped to 0 - MAX_RETRY_AFTER; unparsable or non-finite
    values fall back to default.
    """
    value = response.headers.get('retry-after')
    if not value:
        return default
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = dateparser.parse(value)
        except (ValueError, OverflowError):
            log.debug(f"Unable to parse retry-after '{value}' - using {default}s")
            return default
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if not math.isfinite(seconds):
        log.debug(f"Ignoring retry-after '{value}' - using {default}s")
        return default
    return min(MAX_RETRY_AFTER, max(0.0, seconds))


class PowerwallClient:
    """
    Session-authenticated data access to one Tesla Energy Gateway.

    Every request ensures a session first (except the login itself), retries
    once after re-authenticating on 401 and once after backing off on 429.
    GET responses can be memoized per endpoint for cache_ttl seconds.
    """

    def __init__(self, host: str, password: str, username: str = "customer", port: Union[str, int] = "443",
                 timeout: float = DEFAULT_TIMEOUT, cache_expire: float = DEFAULT_CACHE_EXPIRE, poolmaxsize: int = 10,
                 transport: Optional[Transport] = None, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 min_auth_interval: float = MIN_AUTH_INTERVAL, login_interval: float = LOGIN_INTERVAL):
        """
        Args:
            host          = Hostname or IP address of the gateway (e.g. 10.0.1.99)
            password      = Customer password set up on the gateway
            username      = Login user, "customer" for the local API
            port          = HTTPS port; empty or 443 leaves it out of the URL
            timeout       = Hard timeout in seconds for each request
            cache_expire  = Seconds a GET response is served from cache by the endpoint helpers
            poolmaxsize   = Pool max size for http connection re-use
            transport     = Transport to use instead of the default requests based one
            clock         = Monotonic clock for session age, cache age and login spacing
            sleep         = Coroutine used for back-off waits
        """
        self.host = (host or "").strip()
        self.password = password
        self.username = username or "customer"
        self.port = str(port).strip() if port is not None else ""
        self.timeout = timeout
        self.cache_expire = cache_expire
        self._validate_init_configuration()

        self.sleep = sleep
        self.transport = transport or Transport(timeout=timeout, poolmaxsize=poolmaxsize)
        self.cache = ResponseCache(clock=clock)
        self._store = SessionStore(clock=clock)
        self._auth = Authenticator(self.transport, self._store, self.base_url, self.username, self.password,
                                   timeout=timeout, min_interval=min_auth_interval,
                                   refresh_interval=login_interval, sleep=sleep)
        self._pending: Dict[str, asyncio.Future] = {}
        self._destroyed = False

    def _validate_init_configuration(self):
        if not self.host:
            raise InvalidConfigurationParameter("Tesla Powerwall IP address is required in configuration")
        if not HOST_REGEX.match(self.host):
            raise InvalidConfigurationParameter(f"Invalid powerwall host: '{self.host}'. Must be a hostname or "
                                                f"IP address without scheme or path.")
        if not self.password:
            raise InvalidConfigurationParameter("Tesla Powerwall password is required in configuration")
        if self.port and not self.port.isdigit():
            raise InvalidConfigurationParameter(f"Invalid powerwall port: '{self.port}'")

    @property
    def base_url(self) -> str:
        if self.port in ("", "443"):
            return f"https://{self.host}"
        return f"https://{self.host}:{self.port}"

    @property
    def authenticator(self) -> Authenticator:
        return self._auth

    @property
    def session_token(self) -> Optional[str]:
        return self._store.token

    # Request executor

    async def get(self, endpoint: str, cache_ttl: Optional[float] = None) -> Any:
        """GET endpoint, served from cache when a response younger than cache_ttl seconds exists."""
        return await self._request('GET', endpoint, cache_ttl=cache_ttl)

    async def post(self, endpoint: str, body: Optional[dict] = None) -> Any:
        return await self._request('POST', endpoint, body=body)

    async def _request(self, method: str, endpoint: str, body: Optional[dict] = None,
                       cache_ttl: Optional[float] = None) -> Any:
        if self._destroyed:
            raise TransportError(f"Client destroyed - not sending {method} {endpoint}", phase="request")
        if not (method == 'GET' and cache_ttl):
            return await self._fetch(method, endpoint, body)
        payload = self.cache.get(endpoint, cache_ttl)
        if payload is not None:
            return payload
        # Cache misses for the same endpoint share one request
        pending = self._pending.get(endpoint)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(method, endpoint, body, cache=True))
            self._pending[endpoint] = pending
            pending.add_done_callback(functools.partial(self._fetch_done, endpoint))
        else:
            log.debug(' -- local: Waiting for request already in progress for %s' % endpoint)
        return await asyncio.shield(pending)

    def _fetch_done(self, endpoint: str, task: asyncio.Future) -> None:
        if self._pending.get(endpoint) is task:
            del self._pending[endpoint]
        if not task.cancelled():
            # Outcome is delivered to every waiter through shield()
            task.exception()

    async def _fetch(self, method: str, endpoint: str, body: Optional[dict], cache: bool = False) -> Any:
        if endpoint != LOGIN_PATH:
            await self._auth.ensure_session()
        payload = await self._execute(method, endpoint, body)
        if cache:
            self.cache.put(endpoint, payload)
        return payload

    async def _execute(self, method: str, endpoint: str, body: Optional[dict], retried: bool = False) -> Any:
        url = self.base_url + endpoint
        token = self._store.token
        headers = {}
        if method == 'POST':
            headers['Content-Type'] = 'application/json'
        if token:
            headers['Cookie'] = token
        log.debug(' -- local: Request Powerwall for %s %s' % (method, endpoint))
        r = await self.transport.send(method, url, headers, body, self.timeout)

        if r.status == 429:
            if retried:
                log.error('429 Rate limited by Powerwall API at %s - retry also rate limited' % url)
                raise RateLimitError(r.reason or "Too Many Requests", endpoint)
            wait = retry_after_seconds(r)
            log.warning('Rate limited (429) on %s %s, waiting %.0fs before retry' % (method, endpoint, wait))
            await self.sleep(wait)
            return await self._execute(method, endpoint, body, retried=True)

        if r.status == 401 and not retried and endpoint != LOGIN_PATH:
            log.debug('Session Expired - Trying to get a new one')
            await self._auth.refresh(token)
            return await self._execute(method, endpoint, body, retried=True)

        if not r.ok:
            if r.status == 401:
                log.error('Unable to establish session with Powerwall at %s - check password' % url)
            else:
                log.debug('Unhandled HTTP response code %s at %s' % (r.status, url))
            raise HttpStatusError(r.status, r.reason, endpoint)

        payload = r.json()
        if payload is None:
            log.debug(f"Empty response from Powerwall at {url}")
        return payload

    # Gateway endpoints

    async def get_system_status(self) -> Any:
        """State of energy: {"percentage": ...}"""
        return await self.get(SOE_PATH, self.cache_expire)

    async def get_meters_aggregates(self) -> Any:
        """Power flow per meter: {"site": {"instant_power": ...}, "battery": ..., "solar": ..., "load": ...}"""
        return await self.get(AGGREGATES_PATH, self.cache_expire)

    async def get_grid_status(self) -> Any:
        """{"grid_status": "SystemGridConnected" | "SystemIslandedActive" | ...}"""
        return await self.get(GRID_STATUS_PATH, self.cache_expire)

    async def get_site_master(self) -> Any:
        return await self.get(SITEMASTER_PATH, self.cache_expire)

    async def power_sample(self) -> PowerSample:
        return PowerSample.from_aggregates(await self.get_meters_aggregates())

    async def battery_status(self) -> SystemStatus:
        return SystemStatus.from_payload(await self.get_system_status())

    async def grid(self) -> GridStatus:
        return GridStatus.from_payload(await self.get_grid_status())

    async def test_connection(self) -> bool:
        try:
            await self.get_system_status()
            return True
        except PowerwallError as exc:
            log.error('Connection test failed: %s' % exc)
            return False

    async def connection_report(self) -> ConnectionReport:
        """Login and read each data endpoint, collecting errors instead of stopping at the first one."""
        try:
            await self._auth.authenticate()
        except AuthError as exc:
            log.error('Connection test failed: %s' % exc)
            return ConnectionReport(success=False, message=self._friendly_message(exc), errors=[str(exc)])

        errors = []
        level = grid_status = power_flow = None
        try:
            status = await self.battery_status()
            level = battery_level(status)
        except PowerwallError as exc:
            errors.append(f"Battery status: {exc}")
        try:
            sample = await self.power_sample()
            power_flow = {
                'load': int(round(sample.load_power)),
                'solar': int(round(sample.solar_power)),
                'grid': int(round(sample.site_power)),
                'battery': int(round(sample.battery_power)),
            }
        except PowerwallError as exc:
            errors.append(f"Power flow: {exc}")
        try:
            grid = await self.grid()
            grid_status = 'Connected' if is_grid_connected(grid) else 'Disconnected'
        except PowerwallError as exc:
            errors.append(f"Grid status: {exc}")

        if level is None and power_flow is None and grid_status is None:
            return ConnectionReport(
                success=False,
                message='Connection partially failed - authentication worked but data retrieval failed',
                errors=errors)
        return ConnectionReport(success=True, message='Connection test successful! Tesla Powerwall is responding.',
                                battery_level=level, grid_status=grid_status, power_flow=power_flow,
                                errors=errors)

    @staticmethod
    def _friendly_message(exc: AuthError) -> str:
        cause = exc.__cause__
        if isinstance(cause, TransportError):
            if cause.phase == "timeout":
                return 'Connection timeout - check network connectivity'
            if cause.phase == "connect":
                return 'Unable to connect - check IP address and network connectivity'
        return f'Authentication failed: {exc}'

    # Lifecycle

    def start(self) -> None:
        """Login in the background and keep the session fresh with a periodic re-login."""
        self._auth.start()

    def clear_session(self) -> None:
        self._auth.invalidate()

    async def destroy(self) -> None:
        """Stop background login, drop cached responses and the session, release the connection pool."""
        if self._destroyed:
            return
        self._destroyed = True
        await self._auth.stop()
        pending, self._pending = list(self._pending.values()), {}
        for task in pending:
            task.cancel()
        self.cache.clear()
        self._auth.invalidate()
        self.transport.close()
        log.debug('Powerwall client for %s destroyed' % self.host)

    async def __aenter__(self) -> "PowerwallClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()
