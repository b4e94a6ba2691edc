from pypwbridge.cache import ResponseCache
from pypwbridge.session import Session, SessionStore, SESSION_MAX_AGE


def test_session_max_age_is_eleven_hours():
    assert SESSION_MAX_AGE == 39600


def test_session_store_roundtrip(clock):
    store = SessionStore(clock=clock)
    assert store.get() is None
    assert store.token is None
    store.set(Session("AuthCookie=abc", clock()))
    assert store.token == "AuthCookie=abc"
    store.clear()
    assert store.get() is None


def test_session_expires_at_max_age(clock):
    store = SessionStore(max_age=100, clock=clock)
    store.set(Session("AuthCookie=abc", clock()))
    clock.advance(99)
    assert store.token == "AuthCookie=abc"
    clock.advance(1)
    assert store.get() is None


def test_cache_hit_until_ttl(clock):
    cache = ResponseCache(clock=clock)
    cache.put('/api/system_status/soe', {"percentage": 50})
    assert cache.get('/api/system_status/soe', 5) == {"percentage": 50}
    clock.advance(4)
    assert cache.get('/api/system_status/soe', 5) == {"percentage": 50}
    clock.advance(1)
    assert cache.get('/api/system_status/soe', 5) is None
    # Stale entries are not swept
    assert len(cache) == 1


def test_cache_ttl_is_per_lookup(clock):
    cache = ResponseCache(clock=clock)
    cache.put('a', {"x": 1})
    clock.advance(10)
    assert cache.get('a', 5) is None
    assert cache.get('a', 30) == {"x": 1}


def test_cache_ignores_none_and_clears(clock):
    cache = ResponseCache(clock=clock)
    cache.put('a', None)
    assert len(cache) == 0
    cache.put('b', {})
    assert cache.get('b', 5) == {}
    cache.clear()
    assert cache.get('b', 5) is None
