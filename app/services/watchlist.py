"""Validate and commit movies into users' watch-lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db import MovieRepository, UserRepository, session_scope
from app.services.models import MovieCandidate, ProviderError, TrackedMovie
from app.services.providers import LanguageCapabilities, capabilities_for
from app.services.sessions import ConversationSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RejectionReason(str, Enum):
    ALREADY_RELEASED = "already_released"
    ALREADY_OBSERVING = "already_observing"
    RELEASE_UNKNOWN = "release_unknown"


@dataclass(frozen=True)
class AddDecision:
    reason: RejectionReason | None = None

    @property
    def allowed(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class AddOutcome:
    movie: TrackedMovie | None = None
    reason: RejectionReason | None = None

    @property
    def added(self) -> bool:
        return self.movie is not None


class WatchlistManager:
    """The add-flow: release check, duplicate check, then an idempotent upsert."""

    def __init__(
        self,
        registry: Mapping[str, LanguageCapabilities],
        *,
        session_factory: sessionmaker | None = None,
        movies: MovieRepository | None = None,
        users: UserRepository | None = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.movies = movies or MovieRepository()
        self.users = users or UserRepository()

    def can_add(self, user_id: int, candidate: MovieCandidate, language: str) -> AddDecision:
        """Reject released movies first, then movies the user already observes."""

        logger.debug("Checking whether user %s can add %s", user_id, candidate.id)
        oracle = capabilities_for(self.registry, language).oracle
        try:
            released = oracle.check_released(candidate.id, candidate.title, candidate.year)
        except ProviderError as exc:
            logger.warning("Release check for %s (%s) failed: %s", candidate.id, language, exc)
            return AddDecision(RejectionReason.RELEASE_UNKNOWN)

        if released:
            return AddDecision(RejectionReason.ALREADY_RELEASED)

        with session_scope(self.session_factory) as session:
            if self.users.is_observing(session, user_id, candidate.id):
                return AddDecision(RejectionReason.ALREADY_OBSERVING)
        return AddDecision()

    def commit(self, user_id: int, candidate: MovieCandidate, language: str) -> TrackedMovie:
        """Upsert the movie, then link it to the user. Safe to call repeatedly.

        The two writes are separate transactions; a storage error in the
        second leaves the movie tracked without the user link and is raised.
        """

        movie = self._with_conflict_retry(
            lambda session: self._upsert_movie(session, candidate, language)
        )
        self._with_conflict_retry(
            lambda session: self._link_user(session, user_id, candidate.id, language)
        )
        logger.info("User %s now observes %s (%s)", user_id, candidate.id, language)
        return movie

    def add_selected(self, user_id: int, conversation: ConversationSession) -> AddOutcome:
        """Run the whole add-flow for the conversation's selected movie."""

        candidate = conversation.selected_movie
        if candidate is None:
            raise ValueError("no movie is selected in this conversation")
        decision = self.can_add(user_id, candidate, conversation.language)
        if not decision.allowed:
            return AddOutcome(reason=decision.reason)
        movie = self.commit(user_id, candidate, conversation.language)
        conversation.clear()
        return AddOutcome(movie=movie)

    def list_movies(self, user_id: int) -> list[TrackedMovie]:
        with session_scope(self.session_factory) as session:
            return [
                TrackedMovie.from_record(movie)
                for movie in self.users.list_observed(session, user_id)
            ]

    def remove(self, user_id: int, movie_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            removed = self.users.remove_observed(session, user_id, movie_id)
        if removed:
            logger.info("User %s stopped observing %s", user_id, movie_id)
        return removed

    def _upsert_movie(
        self,
        session: Session,
        candidate: MovieCandidate,
        language: str,
    ) -> TrackedMovie:
        movie = self.movies.get(session, candidate.id)
        if movie is None:
            movie = self.movies.create(
                session,
                movie_id=candidate.id,
                title=candidate.title,
                year=candidate.year,
            )
        self.movies.add_pending_language(session, movie, language)
        return TrackedMovie.from_record(movie)

    def _link_user(self, session: Session, user_id: int, movie_id: str, language: str) -> None:
        self.users.get_or_create(session, user_id, language=language)
        self.users.add_observed(session, user_id, movie_id)

    def _with_conflict_retry(self, operation: Callable[[Session], T]) -> T:
        try:
            with session_scope(self.session_factory) as session:
                return operation(session)
        except IntegrityError:
            # A concurrent writer inserted the same row; the second pass sees it.
            logger.debug("Write conflict, retrying in a fresh transaction")
            with session_scope(self.session_factory) as session:
                return operation(session)
