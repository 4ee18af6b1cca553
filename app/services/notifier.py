"""Release sweep: re-check tracked movies and notify their watchers once."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.db import MovieRepository, UserRepository, session_scope
from app.services.models import ProviderError, TrackedMovie
from app.services.providers import LanguageCapabilities

logger = logging.getLogger(__name__)

RELEASE_MESSAGES = {
    "en": "Good news! {title} ({year}) has been released.",
    "ru": "Отличные новости! Фильм {title} ({year}) вышел.",
}


class NotificationDispatcher(Protocol):
    def send(self, user_id: int, movie: TrackedMovie, language: str) -> bool:
        """Deliver one release notification; return False on failure."""


def format_release_message(movie: TrackedMovie, language: str) -> str:
    template = RELEASE_MESSAGES.get(language, RELEASE_MESSAGES["en"])
    return template.format(title=movie.title, year=movie.year)


class TelegramDispatcher:
    """Sends release notifications through the Telegram Bot API."""

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.token = token or settings.telegram_bot_token
        self.api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self.transport = transport

    def send(self, user_id: int, movie: TrackedMovie, language: str) -> bool:
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        payload = {"chat_id": user_id, "text": format_release_message(movie, language)}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to notify user %s about %s: %s", user_id, movie.id, exc)
            return False
        return True


class LoggingDispatcher:
    """Used when no bot token is configured."""

    def send(self, user_id: int, movie: TrackedMovie, language: str) -> bool:
        logger.info("Release notification for %s: %s", user_id, format_release_message(movie, language))
        return True


def build_dispatcher() -> NotificationDispatcher:
    if get_settings().telegram_bot_token:
        return TelegramDispatcher()
    logger.warning("TELEGRAM_BOT_TOKEN is not configured; notifications will only be logged")
    return LoggingDispatcher()


@dataclass
class SweepReport:
    checked: int = 0
    released: list[str] = field(default_factory=list)
    notified: int = 0
    failed_deliveries: int = 0
    unknown: int = 0
    errors: list[str] = field(default_factory=list)


class ReleaseNotifier:
    def __init__(
        self,
        registry: Mapping[str, LanguageCapabilities],
        dispatcher: NotificationDispatcher,
        *,
        session_factory: sessionmaker | None = None,
        movies: MovieRepository | None = None,
        users: UserRepository | None = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.movies = movies or MovieRepository()
        self.users = users or UserRepository()

    def run_sweep(self) -> SweepReport:
        """Check every movie with pending languages and notify confirmed releases."""

        report = SweepReport()
        try:
            with session_scope(self.session_factory) as session:
                pending = [TrackedMovie.from_record(m) for m in self.movies.list_pending(session)]
        except SQLAlchemyError:
            logger.exception("Could not load unreleased movies; skipping this sweep")
            report.errors.append("load")
            return report

        logger.info("Release sweep started for %d movie(s)", len(pending))
        for movie in pending:
            report.checked += 1
            try:
                self._process_movie(movie, report)
            except SQLAlchemyError:
                logger.exception("Storage failure while processing %s; moving on", movie.id)
                report.errors.append(movie.id)
            except Exception:
                logger.exception("Unexpected failure while processing %s; moving on", movie.id)
                report.errors.append(movie.id)

        logger.info(
            "Release sweep finished: checked=%d released=%s notified=%d failed=%d unknown=%d",
            report.checked,
            report.released,
            report.notified,
            report.failed_deliveries,
            report.unknown,
        )
        return report

    def _process_movie(self, movie: TrackedMovie, report: SweepReport) -> None:
        confirmed = self._confirmed_languages(movie, report)
        if not confirmed:
            return

        with session_scope(self.session_factory) as session:
            recipients = [
                (user.id, user.language)
                for user in self.users.list_watchers(session, movie.id, confirmed)
            ]

        for user_id, language in recipients:
            try:
                delivered = self.dispatcher.send(user_id, movie, language)
            except Exception:
                logger.exception("Dispatcher crashed notifying user %s about %s", user_id, movie.id)
                delivered = False
            if delivered:
                report.notified += 1
            else:
                report.failed_deliveries += 1

        # Persisted only after dispatch so a crash above re-attempts next sweep.
        with session_scope(self.session_factory) as session:
            flipped = self.movies.mark_released(session, movie.id, confirmed)
        if flipped:
            report.released.append(movie.id)
        logger.info(
            "%s released in %s; %d watcher(s) notified",
            movie.id,
            ", ".join(sorted(confirmed)),
            len(recipients),
        )

    def _confirmed_languages(self, movie: TrackedMovie, report: SweepReport) -> set[str]:
        confirmed: set[str] = set()
        for language in sorted(movie.unreleased_languages):
            capabilities = self.registry.get(language)
            if capabilities is None:
                logger.warning("No release oracle for language %s (movie %s)", language, movie.id)
                report.unknown += 1
                continue
            try:
                released = capabilities.oracle.check_released(movie.id, movie.title, movie.year)
            except ProviderError as exc:
                logger.warning("Release status of %s (%s) unknown this cycle: %s", movie.id, language, exc)
                report.unknown += 1
                continue
            if released:
                confirmed.add(language)
        return confirmed
