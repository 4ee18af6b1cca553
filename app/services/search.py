"""Resolve free-text searches into candidate movies for a conversation."""

from __future__ import annotations

import logging
from typing import Mapping

from app.services.models import MovieCandidate, ProviderError
from app.services.providers import LanguageCapabilities, capabilities_for
from app.services.sessions import ConversationSession

logger = logging.getLogger(__name__)


class StaleSelectionError(Exception):
    """A selection points outside the candidate list currently in the session."""

    def __init__(self, index: int, movie_id: str | None = None) -> None:
        super().__init__(f"candidate #{index} ({movie_id or 'any'}) is not in the current results")
        self.index = index
        self.movie_id = movie_id


class SearchResolver:
    def __init__(self, registry: Mapping[str, LanguageCapabilities]) -> None:
        self.registry = registry

    def resolve(self, session: ConversationSession, text: str) -> list[MovieCandidate]:
        """Return the session's candidate list, searching only when there is none.

        A provider failure yields an empty list and leaves the session
        untouched so the next message triggers a fresh search.
        """

        if session.movies:
            return session.movies

        search = capabilities_for(self.registry, session.language).search
        try:
            logger.debug("Searching for movie %r (%s)", text, session.language)
            movies = search.search(text)
        except ProviderError as exc:
            logger.error("Search failed with the error: %s", exc)
            return []

        if movies:
            session.movies = movies
        return movies

    def select(
        self,
        session: ConversationSession,
        index: int,
        *,
        movie_id: str | None = None,
    ) -> MovieCandidate:
        movies = session.movies or []
        if not 0 <= index < len(movies):
            raise StaleSelectionError(index, movie_id)
        candidate = movies[index]
        if movie_id is not None and candidate.id != movie_id:
            raise StaleSelectionError(index, movie_id)
        session.selected_movie = candidate
        return candidate

    def back_to_results(self, session: ConversationSession) -> list[MovieCandidate]:
        session.selected_movie = None
        return session.movies or []
