"""Database session management and repositories."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

from sqlalchemy import Engine, create_engine, delete, insert, select, update
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings
from app.models import Base, Movie, PendingLanguage, User, normalize_title, user_movies


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections are shared with scheduler threads."""

    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, future=True, **kwargs)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_models(bind: Engine | None = None) -> None:
    """Create tables if they do not exist (handy for local dev)."""
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """One transaction: commit on success, roll back and re-raise on failure."""

    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class MovieRepository:
    """Data access helpers for shared movie records."""

    def get(self, session: Session, movie_id: str) -> Movie | None:
        return session.get(Movie, movie_id)

    def create(self, session: Session, *, movie_id: str, title: str, year: int) -> Movie:
        movie = Movie(
            id=movie_id,
            title=normalize_title(title),
            year=year,
            released=False,
        )
        session.add(movie)
        session.flush()  # IntegrityError here means another writer won the insert
        return movie

    def add_pending_language(self, session: Session, movie: Movie, language: str) -> bool:
        """Insert ``language`` into the movie's pending set; False if already there."""

        if language in movie.unreleased_languages:
            return False
        movie.pending_languages.append(PendingLanguage(language=language))
        session.flush()
        return True

    def list_pending(self, session: Session) -> list[Movie]:
        """Movies that still owe a notification in at least one language."""

        query = select(Movie).where(Movie.pending_languages.any()).order_by(Movie.id)
        return list(session.execute(query).scalars())

    def mark_released(
        self,
        session: Session,
        movie_id: str,
        languages: Iterable[str],
    ) -> bool:
        """Flip ``released`` once and drain the notified languages.

        Returns True only for the call that performed the flip.
        """

        flipped = session.execute(
            update(Movie)
            .where(Movie.id == movie_id, Movie.released.is_(False))
            .values(released=True)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(PendingLanguage)
            .where(
                PendingLanguage.movie_id == movie_id,
                PendingLanguage.language.in_(list(languages)),
            )
            .execution_options(synchronize_session=False)
        )
        return flipped.rowcount == 1


class UserRepository:
    """Data access helpers for users and their watch-lists."""

    def get(self, session: Session, user_id: int) -> User | None:
        return session.get(User, user_id)

    def get_or_create(
        self,
        session: Session,
        user_id: int,
        *,
        language: str,
        username: str | None = None,
    ) -> User:
        user = session.get(User, user_id)
        if user is None:
            user = User(id=user_id, language=language, username=username)
            session.add(user)
            session.flush()
        elif username and user.username != username:
            user.username = username
        return user

    def set_language(self, session: Session, user: User, language: str) -> User:
        """Switch the user's language and carry their outstanding notifications over.

        A watched movie still owes this user a notification while it is
        unreleased or while their previous language is pending on it.
        """

        previous = user.language
        user.language = language
        if previous != language:
            movies = MovieRepository()
            for movie in self.list_observed(session, user.id):
                if not movie.released or previous in movie.unreleased_languages:
                    movies.add_pending_language(session, movie, language)
        session.flush()
        return user

    def touch(self, session: Session, user: User, *, now: datetime | None = None) -> None:
        user.last_activity = now or datetime.now(timezone.utc)

    def is_observing(self, session: Session, user_id: int, movie_id: str) -> bool:
        query = select(user_movies.c.movie_id).where(
            user_movies.c.user_id == user_id,
            user_movies.c.movie_id == movie_id,
        )
        return session.execute(query).first() is not None

    def add_observed(self, session: Session, user_id: int, movie_id: str) -> bool:
        """Link a movie into the user's watch-list; False if it was already there."""

        if self.is_observing(session, user_id, movie_id):
            return False
        session.execute(insert(user_movies).values(user_id=user_id, movie_id=movie_id))
        return True

    def remove_observed(self, session: Session, user_id: int, movie_id: str) -> bool:
        result = session.execute(
            delete(user_movies).where(
                user_movies.c.user_id == user_id,
                user_movies.c.movie_id == movie_id,
            )
        )
        return result.rowcount > 0

    def list_observed(self, session: Session, user_id: int) -> list[Movie]:
        query = (
            select(Movie)
            .join(user_movies, user_movies.c.movie_id == Movie.id)
            .where(user_movies.c.user_id == user_id)
            .order_by(Movie.year, Movie.title)
        )
        return list(session.execute(query).scalars())

    def list_watchers(
        self,
        session: Session,
        movie_id: str,
        languages: Iterable[str],
    ) -> list[User]:
        """Users observing ``movie_id`` whose preferred language is in ``languages``."""

        query = (
            select(User)
            .join(user_movies, user_movies.c.user_id == User.id)
            .where(
                user_movies.c.movie_id == movie_id,
                User.language.in_(list(languages)),
            )
            .order_by(User.id)
        )
        return list(session.execute(query).scalars())
