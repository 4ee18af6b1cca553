"""SQLAlchemy ORM models.

Movies are shared records keyed by their external (IMDb-style) identifier.
Users reference movies through the ``user_movies`` association table, whose
composite primary key keeps every watch-list a set. The languages in which a
movie is still owed a release notification live in their own table so that
adding and removing a single language is one atomic statement.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

_TITLE_SUBSTITUTIONS = str.maketrans({"ё": "e", "Ё": "E"})


def normalize_title(title: str) -> str:
    """Apply the locale-specific substitutions stored titles rely on."""

    return title.strip().translate(_TITLE_SUBSTITUTIONS)


class Base(DeclarativeBase):
    pass


user_movies = Table(
    "user_movies",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("movie_id", ForeignKey("movies.id", ondelete="CASCADE"), primary_key=True),
)


class Movie(Base):
    """A title somebody is waiting for."""

    __tablename__ = "movies"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    year: Mapped[int] = mapped_column(Integer)
    released: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    pending_languages: Mapped[list[PendingLanguage]] = relationship(
        back_populates="movie",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def unreleased_languages(self) -> set[str]:
        return {entry.language for entry in self.pending_languages}

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Movie(id={self.id}, title={self.title}, released={self.released})"


class PendingLanguage(Base):
    """One language in which watchers of a movie still await a notification."""

    __tablename__ = "movie_pending_languages"

    movie_id: Mapped[str] = mapped_column(
        ForeignKey("movies.id", ondelete="CASCADE"),
        primary_key=True,
    )
    language: Mapped[str] = mapped_column(String(8), primary_key=True)

    movie: Mapped[Movie] = relationship(back_populates="pending_languages")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    language: Mapped[str] = mapped_column(String(8))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_activity: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    observable_movies: Mapped[set[Movie]] = relationship(
        secondary=user_movies,
        collection_class=set,
        lazy="selectin",
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"User(id={self.id}, language={self.language})"
