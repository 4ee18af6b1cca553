import pytest
from sqlalchemy import func, select, update

from app.db import session_scope
from app.models import Movie, User, user_movies
from app.services.models import MovieCandidate
from app.services.sessions import ConversationSession
from app.services.watchlist import RejectionReason, WatchlistManager
from fakes import DUNE, DUNE_1984


@pytest.fixture
def watchlist(registry, session_factory):
    return WatchlistManager(registry, session_factory=session_factory)


def _movie(session_factory, movie_id):
    with session_scope(session_factory) as session:
        movie = session.get(Movie, movie_id)
        if movie is None:
            return None
        return movie.released, movie.unreleased_languages, movie.title


def _observed(session_factory, user_id):
    with session_scope(session_factory) as session:
        user = session.get(User, user_id)
        return {movie.id for movie in user.observable_movies} if user else set()


def test_add_unreleased_movie_creates_records(watchlist, session_factory):
    decision = watchlist.can_add(42, DUNE, "en")
    assert decision.allowed

    movie = watchlist.commit(42, DUNE, "en")

    assert movie.id == "tt1160419"
    assert movie.released is False
    assert movie.unreleased_languages == {"en"}
    assert _movie(session_factory, DUNE.id) == (False, {"en"}, "Dune")
    assert _observed(session_factory, 42) == {"tt1160419"}


def test_adding_same_movie_again_is_rejected_as_already_observing(watchlist):
    watchlist.commit(42, DUNE, "en")

    decision = watchlist.can_add(42, DUNE, "en")

    assert not decision.allowed
    assert decision.reason is RejectionReason.ALREADY_OBSERVING


def test_released_movie_is_rejected_without_mutation(watchlist, en_oracle, session_factory):
    en_oracle.released.add(DUNE_1984.id)

    decision = watchlist.can_add(42, DUNE_1984, "en")

    assert decision.reason is RejectionReason.ALREADY_RELEASED
    assert _movie(session_factory, DUNE_1984.id) is None
    assert _observed(session_factory, 42) == set()


def test_release_check_wins_over_duplicate_check(watchlist, en_oracle):
    watchlist.commit(42, DUNE, "en")
    en_oracle.released.add(DUNE.id)

    decision = watchlist.can_add(42, DUNE, "en")

    assert decision.reason is RejectionReason.ALREADY_RELEASED


def test_release_check_failure_is_reported_as_unknown(watchlist, en_oracle):
    en_oracle.failing.add(DUNE.id)

    decision = watchlist.can_add(42, DUNE, "en")

    assert decision.reason is RejectionReason.RELEASE_UNKNOWN


def test_release_check_uses_the_conversation_language(watchlist, en_oracle, ru_oracle):
    ru_oracle.released.add(DUNE.id)

    assert watchlist.can_add(42, DUNE, "en").allowed
    assert watchlist.can_add(42, DUNE, "ru").reason is RejectionReason.ALREADY_RELEASED
    assert en_oracle.calls == [DUNE.id]
    assert ru_oracle.calls == [DUNE.id]


def test_commit_is_idempotent(watchlist, session_factory):
    watchlist.commit(42, DUNE, "en")
    watchlist.commit(42, DUNE, "en")

    with session_scope(session_factory) as session:
        links = session.execute(
            select(func.count()).select_from(user_movies).where(user_movies.c.user_id == 42)
        ).scalar_one()
    assert links == 1
    assert _movie(session_factory, DUNE.id) == (False, {"en"}, "Dune")


def test_second_language_joins_existing_movie(watchlist, session_factory):
    watchlist.commit(42, DUNE, "en")
    movie = watchlist.commit(7, DUNE, "ru")

    assert movie.unreleased_languages == {"en", "ru"}
    assert _observed(session_factory, 7) == {DUNE.id}


def test_commit_does_not_disturb_released_flag(watchlist, session_factory):
    watchlist.commit(42, DUNE, "en")
    with session_scope(session_factory) as session:
        session.execute(update(Movie).where(Movie.id == DUNE.id).values(released=True))

    movie = watchlist.commit(7, DUNE, "ru")

    assert movie.released is True
    assert "ru" in movie.unreleased_languages


def test_titles_are_normalized_at_write_time(watchlist):
    candidate = MovieCandidate(id="tt0000001", title="Ёлки", year=2010)

    movie = watchlist.commit(42, candidate, "ru")

    assert movie.title == "E" + "лки"
    assert "Ё" not in movie.title


def test_add_selected_clears_conversation_on_success(watchlist):
    conversation = ConversationSession(language="en", movies=[DUNE, DUNE_1984], selected_movie=DUNE)

    outcome = watchlist.add_selected(42, conversation)

    assert outcome.added
    assert outcome.movie.id == DUNE.id
    assert conversation.movies is None
    assert conversation.selected_movie is None


def test_add_selected_keeps_conversation_on_rejection(watchlist, en_oracle):
    en_oracle.released.add(DUNE.id)
    conversation = ConversationSession(language="en", movies=[DUNE], selected_movie=DUNE)

    outcome = watchlist.add_selected(42, conversation)

    assert not outcome.added
    assert outcome.reason is RejectionReason.ALREADY_RELEASED
    assert conversation.movies == [DUNE]


def test_add_selected_requires_a_selection(watchlist):
    with pytest.raises(ValueError):
        watchlist.add_selected(42, ConversationSession(language="en", movies=[DUNE]))


def test_list_and_remove(watchlist, session_factory):
    watchlist.commit(42, DUNE, "en")
    watchlist.commit(42, DUNE_1984, "en")

    assert [m.year for m in watchlist.list_movies(42)] == [1984, 2021]

    assert watchlist.remove(42, DUNE_1984.id) is True
    assert watchlist.remove(42, DUNE_1984.id) is False
    assert [m.id for m in watchlist.list_movies(42)] == [DUNE.id]
    # the shared record stays for other watchers
    assert _movie(session_factory, DUNE_1984.id) is not None
