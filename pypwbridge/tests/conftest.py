"""Pytest configuration and fixtures."""
import asyncio
import json
from typing import Any, Dict, List, NamedTuple, Optional
from urllib.parse import urlsplit

import pytest
from requests.structures import CaseInsensitiveDict

from pypwbridge.auth import LOGIN_PATH
from pypwbridge.client import PowerwallClient
from pypwbridge.exceptions import TransportError
from pypwbridge.transport import TransportResponse

AGGREGATES = {
    "site": {"instant_power": 100, "instant_reactive_power": 0, "frequency": 60.0, "i_a_current": 1.2},
    "solar": {"instant_power": 5000, "instant_reactive_power": 0},
    "battery": {"instant_power": -2000, "instant_reactive_power": 0},
    "load": {"instant_power": 3100, "instant_reactive_power": 0},
}
SOE = {"percentage": 85.5}
GRID = {"grid_status": "SystemGridConnected", "grid_services_active": False}


def response(status: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None,
             cookies=(), reason: str = "") -> TransportResponse:
    body = json.dumps(payload).encode() if payload is not None else b''
    return TransportResponse(status=status, reason=reason, headers=CaseInsensitiveDict(headers or {}),
                             body=body, set_cookies=tuple(cookies))


class Call(NamedTuple):
    method: str
    path: str
    headers: Dict[str, str]
    body: Any


class FakeTransport:
    """
    Scripted stand-in for Transport.

    Responses queued for a path are served in order; the last one repeats.
    Logins without a queued response succeed with a new AuthCookie each time.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self.routes: Dict[str, list] = {}
        self.logins = 0
        self.closed = False

    def queue(self, path: str, *responses) -> None:
        self.routes.setdefault(path, []).extend(responses)

    def count(self, path: str) -> int:
        return sum(1 for call in self.calls if call.path == path)

    def calls_to(self, path: str) -> List[Call]:
        return [call for call in self.calls if call.path == path]

    async def send(self, method, url, headers=None, body=None, timeout=None) -> TransportResponse:
        if self.closed:
            raise TransportError("Transport closed", url=url)
        path = urlsplit(url).path
        self.calls.append(Call(method, path, dict(headers or {}), body))
        await asyncio.sleep(0)
        queued = self.routes.get(path)
        if queued:
            result = queued.pop(0) if len(queued) > 1 else queued[0]
        elif path == LOGIN_PATH:
            result = None
        else:
            result = response(200, {})
        if isinstance(result, Exception):
            raise result
        if result is None:
            self.logins += 1
            return response(200, {"token": "t"}, cookies=(
                f"AuthCookie=token{self.logins}; Path=/; HttpOnly; Secure",
                "UserRecord=record; Path=/"))
        return result

    def close(self) -> None:
        self.closed = True


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(clock, sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def client(transport, clock, fake_sleep):
    return PowerwallClient("10.0.1.99", "secret", transport=transport, clock=clock, sleep=fake_sleep)


@pytest.fixture
def make_response():
    return response


@pytest.fixture
def aggregates():
    return json.loads(json.dumps(AGGREGATES))


@pytest.fixture
def soe():
    return dict(SOE)


@pytest.fixture
def grid_status():
    return dict(GRID)
