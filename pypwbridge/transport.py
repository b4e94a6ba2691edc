import asyncio
import functools
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Mapping, NamedTuple, Optional, Tuple

import requests
from requests.structures import CaseInsensitiveDict

from pypwbridge.exceptions import TransportError, InvalidResponseError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10  # seconds - hard upper bound for a single request/response cycle


class TransportResponse(NamedTuple):
    status: int
    reason: str
    headers: Mapping[str, str]
    body: bytes = b''
    set_cookies: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError as exc:
            raise InvalidResponseError(f"Unable to parse payload as JSON: {exc}") from exc


def _set_cookie_headers(r: requests.Response) -> Tuple[str, ...]:
    # requests folds repeated Set-Cookie headers into one string, urllib3 keeps them apart
    raw_headers = getattr(r.raw, 'headers', None)
    if raw_headers is not None and hasattr(raw_headers, 'getlist'):
        return tuple(raw_headers.getlist("Set-Cookie"))
    value = r.headers.get('set-cookie')
    return (value,) if value else ()


class Transport:
    """
    Single HTTPS request/response cycle against the gateway.

    The blocking requests call runs in a private thread pool and is awaited with
    asyncio.wait_for, so a hung socket can never stall the event loop for longer
    than the timeout. Certificate validation is turned off for this session only
    because gateways ship a self-signed certificate.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, poolmaxsize: int = 10, verify: bool = False):
        self.timeout = timeout
        self.poolmaxsize = poolmaxsize
        self.session = requests.Session()
        if poolmaxsize > 0:
            # noinspection PyUnresolvedReferences
            a = requests.adapters.HTTPAdapter(pool_maxsize=poolmaxsize)
            self.session.mount('https://', a)
        self.session.verify = verify
        # The SessionStore owns the auth cookies - never let the jar replay them
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        self._executor = ThreadPoolExecutor(max_workers=max(poolmaxsize, 1), thread_name_prefix="pypwbridge")
        self._closed = False

    async def send(self, method: str, url: str, headers: Optional[Mapping[str, str]] = None,
                   body: Optional[Any] = None, timeout: Optional[float] = None) -> TransportResponse:
        if self._closed:
            raise TransportError(f"Transport closed - not sending {method} {url}", url=url, phase="request")
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        call = functools.partial(self._send_blocking, method, url, dict(headers or {}), body, timeout)
        try:
            return await asyncio.wait_for(loop.run_in_executor(self._executor, call), timeout=timeout)
        except asyncio.TimeoutError:
            log.debug('ERROR Timeout waiting for Powerwall API %s' % url)
            raise TransportError(f"Timeout after {timeout}s waiting for {url}", url=url, phase="timeout") from None

    def _send_blocking(self, method: str, url: str, headers: dict, body: Optional[Any],
                       timeout: float) -> TransportResponse:
        try:
            r = self.session.request(method, url, headers=headers, json=body, timeout=timeout)
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Timeout waiting for Powerwall API {url}: {exc}", url=url, phase="timeout") from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransportError(f"Unable to connect to Powerwall at {url}: {exc}", url=url, phase="connect") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Unknown error connecting to Powerwall at {url}: {exc}", url=url) from exc
        return TransportResponse(
            status=r.status_code,
            reason=r.reason or '',
            headers=CaseInsensitiveDict(r.headers),
            body=r.content or b'',
            set_cookies=_set_cookie_headers(r),
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.session.close()
