import asyncio

import pytest

from pypwbridge.auth import Authenticator, extract_session_token, LOGIN_PATH
from pypwbridge.exceptions import AuthError, TransportError
from pypwbridge.session import SessionStore


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def auth(transport, store, fake_sleep):
    return Authenticator(transport, store, "https://10.0.1.99", "customer", "secret", sleep=fake_sleep)


def test_extract_session_token():
    cookies = ["AuthCookie=abc123; Path=/; HttpOnly; Secure", "UserRecord=xyz; Path=/; Secure"]
    assert extract_session_token(cookies) == "AuthCookie=abc123; UserRecord=xyz"
    assert extract_session_token([" AuthCookie=abc "]) == "AuthCookie=abc"
    assert extract_session_token([]) == ""
    assert extract_session_token(["", "; Path=/"]) == ""


@pytest.mark.asyncio
async def test_login_stores_session(auth, store, transport):
    session = await auth.authenticate()
    assert session.token == "AuthCookie=token1; UserRecord=record"
    assert store.token == session.token
    call = transport.calls_to(LOGIN_PATH)[0]
    assert call.method == 'POST'
    assert call.body == {"username": "customer", "password": "secret"}
    assert call.headers['Content-Type'] == 'application/json'


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_login(auth, transport):
    sessions = await asyncio.gather(*(auth.authenticate() for _ in range(5)))
    assert transport.count(LOGIN_PATH) == 1
    assert len({s.token for s in sessions}) == 1


@pytest.mark.asyncio
async def test_ensure_session_reuses_valid_session(auth, transport):
    first = await auth.ensure_session()
    second = await auth.ensure_session()
    assert first == second
    assert auth.attempts == 1


@pytest.mark.asyncio
async def test_successive_logins_are_spaced(auth, sleeps, clock):
    await auth.authenticate()
    clock.advance(2)
    await auth.authenticate()
    assert sleeps == [3]
    assert auth.attempts == 2


@pytest.mark.asyncio
async def test_no_wait_after_interval(auth, sleeps, clock):
    await auth.authenticate()
    clock.advance(6)
    await auth.authenticate()
    assert sleeps == []


@pytest.mark.asyncio
async def test_rejected_login(auth, store, transport, make_response):
    transport.queue(LOGIN_PATH, make_response(401, {"error": "bad credentials"}, reason='Unauthorized'))
    with pytest.raises(AuthError) as exc_info:
        await auth.authenticate()
    assert "401" in str(exc_info.value)
    assert store.get() is None


@pytest.mark.asyncio
async def test_login_without_cookie(auth, store, transport, make_response):
    transport.queue(LOGIN_PATH, make_response(200, {"token": "t"}))
    with pytest.raises(AuthError):
        await auth.authenticate()
    assert store.get() is None


@pytest.mark.asyncio
async def test_unreachable_gateway(auth, transport):
    transport.queue(LOGIN_PATH, TransportError("refused", phase="connect"))
    with pytest.raises(AuthError) as exc_info:
        await auth.authenticate()
    assert isinstance(exc_info.value.__cause__, TransportError)


@pytest.mark.asyncio
async def test_failed_login_is_shared_and_cleared(auth, transport, make_response):
    transport.queue(LOGIN_PATH, make_response(500, reason='Server Error'), None)
    results = await asyncio.gather(auth.authenticate(), auth.authenticate(), return_exceptions=True)
    assert all(isinstance(r, AuthError) for r in results)
    assert transport.count(LOGIN_PATH) == 1
    # The next attempt starts a fresh login
    session = await auth.authenticate()
    assert session.token.startswith("AuthCookie=token1")


@pytest.mark.asyncio
async def test_refresh_reuses_newer_session(auth, transport):
    stale = await auth.authenticate()
    fresh = await auth.refresh(stale.token)
    assert fresh.token != stale.token
    again = await auth.refresh(stale.token)
    assert again == fresh
    assert transport.count(LOGIN_PATH) == 2


@pytest.mark.asyncio
async def test_background_login_loop(auth, transport):
    auth.refresh_interval = 3600
    auth.start()
    for _ in range(50):
        await asyncio.sleep(0)
    await auth.stop()
    assert transport.count(LOGIN_PATH) >= 2
    count = transport.count(LOGIN_PATH)
    for _ in range(50):
        await asyncio.sleep(0)
    assert transport.count(LOGIN_PATH) == count
