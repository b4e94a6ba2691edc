import time
from types import SimpleNamespace

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from urllib3._collections import HTTPHeaderDict

from pypwbridge.exceptions import TransportError, InvalidResponseError
from pypwbridge.transport import Transport, TransportResponse


def fake_response(status=200, reason='OK', content=b'{"percentage": 72}', cookies=()):
    raw_headers = HTTPHeaderDict()
    raw_headers.add('Content-Type', 'application/json')
    for cookie in cookies:
        raw_headers.add('Set-Cookie', cookie)
    return SimpleNamespace(status_code=status, reason=reason, content=content,
                           headers=CaseInsensitiveDict({'Content-Type': 'application/json'}),
                           raw=SimpleNamespace(headers=raw_headers))


@pytest.fixture
def transport():
    t = Transport(timeout=2)
    yield t
    t.close()


def test_session_settings(transport):
    assert transport.session.verify is False
    assert transport.session.cookies.get_policy().allowed_domains() == ()


@pytest.mark.asyncio
async def test_send_returns_response(transport, monkeypatch):
    sent = {}

    def request(method, url, headers=None, json=None, timeout=None):
        sent.update(method=method, url=url, headers=headers, json=json, timeout=timeout)
        return fake_response(cookies=('AuthCookie=abc; Path=/', 'UserRecord=xyz; Path=/'))

    monkeypatch.setattr(transport.session, 'request', request)
    r = await transport.send('POST', 'https://10.0.1.99/api/login/Basic', {'Content-Type': 'application/json'},
                             {'username': 'customer'})
    assert r.ok
    assert r.status == 200
    assert r.json() == {"percentage": 72}
    assert r.headers['content-type'] == 'application/json'
    assert r.set_cookies == ('AuthCookie=abc; Path=/', 'UserRecord=xyz; Path=/')
    assert sent['json'] == {'username': 'customer'}
    assert sent['timeout'] == 2


@pytest.mark.asyncio
async def test_error_status_is_returned_not_raised(transport, monkeypatch):
    monkeypatch.setattr(transport.session, 'request',
                        lambda *args, **kwargs: fake_response(status=500, reason='Server Error', content=b''))
    r = await transport.send('GET', 'https://10.0.1.99/api/meters/aggregates')
    assert not r.ok
    assert r.status == 500
    assert r.json() is None


@pytest.mark.asyncio
@pytest.mark.parametrize("error, phase", [
    (requests.exceptions.ConnectTimeout("slow"), "timeout"),
    (requests.exceptions.ReadTimeout("slow"), "timeout"),
    (requests.exceptions.ConnectionError("refused"), "connect"),
    (requests.exceptions.InvalidURL("bad"), "request"),
])
async def test_request_errors_map_to_transport_error(transport, monkeypatch, error, phase):
    def request(*args, **kwargs):
        raise error

    monkeypatch.setattr(transport.session, 'request', request)
    with pytest.raises(TransportError) as exc_info:
        await transport.send('GET', 'https://10.0.1.99/api/system_status/soe')
    assert exc_info.value.phase == phase
    assert exc_info.value.url == 'https://10.0.1.99/api/system_status/soe'


@pytest.mark.asyncio
async def test_hard_timeout_on_hung_request(transport, monkeypatch):
    def request(*args, **kwargs):
        time.sleep(0.5)
        return fake_response()

    monkeypatch.setattr(transport.session, 'request', request)
    started = time.monotonic()
    with pytest.raises(TransportError) as exc_info:
        await transport.send('GET', 'https://10.0.1.99/api/system_status/soe', timeout=0.05)
    assert exc_info.value.phase == "timeout"
    assert time.monotonic() - started < 0.4


@pytest.mark.asyncio
async def test_closed_transport_refuses_to_send(monkeypatch):
    t = Transport()
    calls = []
    monkeypatch.setattr(t.session, 'request', lambda *args, **kwargs: calls.append(args))
    t.close()
    t.close()
    with pytest.raises(TransportError):
        await t.send('GET', 'https://10.0.1.99/api/system_status/soe')
    assert calls == []


def test_response_json_errors():
    r = TransportResponse(200, 'OK', {}, b'<html>')
    with pytest.raises(InvalidResponseError):
        r.json()
    assert TransportResponse(204, 'No Content', {}).json() is None
    assert not TransportResponse(401, 'Unauthorized', {}).ok
