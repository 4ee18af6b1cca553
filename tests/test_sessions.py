from app.services.sessions import InMemorySessionStore
from fakes import DUNE


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_get_returns_copies_until_saved():
    store = InMemorySessionStore()
    store.create(1, language="en")

    session = store.get(1)
    session.movies = [DUNE]
    assert store.get(1).movies is None

    store.save(1, session)
    assert store.get(1).movies == [DUNE]


def test_sessions_are_scoped_per_user():
    store = InMemorySessionStore()
    store.create(1, language="en")
    store.create(2, language="ru")

    assert store.get(1).language == "en"
    assert store.get(2).language == "ru"
    assert store.get(3) is None


def test_create_replaces_previous_conversation():
    store = InMemorySessionStore()
    session = store.create(1, language="en")
    session.movies = [DUNE]
    store.save(1, session)

    store.create(1, language="en")

    assert store.get(1).movies is None


def test_clear_removes_session():
    store = InMemorySessionStore()
    store.create(1, language="en")

    store.clear(1)
    store.clear(1)

    assert store.get(1) is None
    assert len(store) == 0


def test_idle_sessions_expire():
    clock = FakeClock()
    store = InMemorySessionStore(ttl_seconds=60, clock=clock)
    store.create(1, language="en")

    clock.now += 30
    assert store.get(1) is not None

    clock.now += 61
    assert store.get(1) is None
    assert len(store) == 0


def test_save_refreshes_expiry():
    clock = FakeClock()
    store = InMemorySessionStore(ttl_seconds=60, clock=clock)
    session = store.create(1, language="en")

    clock.now += 50
    store.save(1, session)
    clock.now += 50

    assert store.get(1) is not None
