import logging

import pytest

from app.services.models import ProviderError
from app.services.search import SearchResolver, StaleSelectionError
from app.services.sessions import ConversationSession
from fakes import DUNE, DUNE_1984


@pytest.fixture
def resolver(registry):
    return SearchResolver(registry)


def test_resolve_searches_and_caches_candidates(resolver, en_search):
    session = ConversationSession(language="en")

    movies = resolver.resolve(session, "Dune")

    assert movies == [DUNE, DUNE_1984]
    assert session.movies == [DUNE, DUNE_1984]
    assert en_search.calls == ["Dune"]


def test_resolve_returns_cached_list_until_cleared(resolver, en_search):
    session = ConversationSession(language="en")
    first = resolver.resolve(session, "Dune")

    en_search.results = []
    second = resolver.resolve(session, "something else")

    assert second == first
    assert en_search.calls == ["Dune"]

    session.clear()
    assert resolver.resolve(session, "something else") == []
    assert en_search.calls == ["Dune", "something else"]


def test_resolve_uses_the_conversation_language(resolver, en_search, ru_search):
    session = ConversationSession(language="ru")

    movies = resolver.resolve(session, "Дюна")

    assert [m.title for m in movies] == ["Дюна"]
    assert ru_search.calls == ["Дюна"]
    assert en_search.calls == []


def test_resolve_provider_failure_returns_empty_and_keeps_session_unset(resolver, en_search, caplog):
    en_search.error = ProviderError("TMDb is down")
    session = ConversationSession(language="en")

    with caplog.at_level(logging.ERROR, logger="app.services.search"):
        assert resolver.resolve(session, "Dune") == []

    assert session.movies is None
    assert "Search failed" in caplog.text


def test_resolve_does_not_cache_empty_results(resolver, en_search):
    en_search.results = []
    session = ConversationSession(language="en")

    assert resolver.resolve(session, "zzzz") == []
    assert session.movies is None


def test_select_sets_selected_movie(resolver):
    session = ConversationSession(language="en")
    resolver.resolve(session, "Dune")

    chosen = resolver.select(session, 1, movie_id=DUNE_1984.id)

    assert chosen == DUNE_1984
    assert session.selected_movie == DUNE_1984


@pytest.mark.parametrize("index", [-1, 2, 10])
def test_select_out_of_range_is_stale(resolver, index):
    session = ConversationSession(language="en")
    resolver.resolve(session, "Dune")

    with pytest.raises(StaleSelectionError):
        resolver.select(session, index)
    assert session.selected_movie is None


def test_select_with_mismatched_id_is_stale(resolver):
    session = ConversationSession(language="en")
    resolver.resolve(session, "Dune")

    with pytest.raises(StaleSelectionError):
        resolver.select(session, 0, movie_id=DUNE_1984.id)


def test_select_after_clear_is_stale(resolver):
    session = ConversationSession(language="en")
    resolver.resolve(session, "Dune")
    session.clear()

    with pytest.raises(StaleSelectionError):
        resolver.select(session, 0, movie_id=DUNE.id)


def test_back_to_results_keeps_list(resolver):
    session = ConversationSession(language="en")
    resolver.resolve(session, "Dune")
    resolver.select(session, 0)

    movies = resolver.back_to_results(session)

    assert movies == [DUNE, DUNE_1984]
    assert session.selected_movie is None
