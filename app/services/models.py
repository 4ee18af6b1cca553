"""Shared dataclasses for service layer."""

from __future__ import annotations

from dataclasses import dataclass, field

from app.models import Movie


class ProviderError(Exception):
    """Base exception for search provider and release oracle failures."""


@dataclass(frozen=True, slots=True)
class MovieCandidate:
    """A search hit the user may pick and add to a watch-list."""

    id: str
    title: str
    year: int
    tmdb_id: int | None = None

    @property
    def label(self) -> str:
        return f"({self.year}) {self.title}"


@dataclass(frozen=True, slots=True)
class SearchQuery:
    title: str
    year: int | None = None


@dataclass(slots=True)
class TrackedMovie:
    """Detached snapshot of a stored movie, safe to use after the session closes."""

    id: str
    title: str
    year: int
    released: bool
    unreleased_languages: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_record(cls, movie: Movie) -> TrackedMovie:
        return cls(
            id=movie.id,
            title=movie.title,
            year=movie.year,
            released=movie.released,
            unreleased_languages=frozenset(movie.unreleased_languages),
        )
