"""Ephemeral per-user conversation state for the search/add flow."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from app.services.models import MovieCandidate


@dataclass
class ConversationSession:
    language: str
    movies: list[MovieCandidate] | None = None
    selected_movie: MovieCandidate | None = None
    touched_at: float = field(default=0.0, compare=False)

    def clear(self) -> None:
        self.movies = None
        self.selected_movie = None


class InMemorySessionStore:
    """Thread-safe session store keyed by user id.

    Sessions live only in this process and expire after ``ttl_seconds`` of
    inactivity. Callers always get a copy, so a session is only changed
    through ``save``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[int, ConversationSession] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._clock = clock

    def create(self, user_id: int, *, language: str) -> ConversationSession:
        session = ConversationSession(language=language, touched_at=self._clock())
        with self._lock:
            self._sessions[user_id] = session
        return _copy(session)

    def get(self, user_id: int) -> ConversationSession | None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            if self._expired(session):
                del self._sessions[user_id]
                return None
            return _copy(session)

    def save(self, user_id: int, session: ConversationSession) -> None:
        stored = _copy(session)
        stored.touched_at = self._clock()
        with self._lock:
            self._sessions[user_id] = stored

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _expired(self, session: ConversationSession) -> bool:
        return self._ttl is not None and self._clock() - session.touched_at > self._ttl


def _copy(session: ConversationSession) -> ConversationSession:
    movies = list(session.movies) if session.movies is not None else None
    return replace(session, movies=movies)
