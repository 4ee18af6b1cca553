"""Per-language search and release-status capabilities.

Every supported language maps to one ``LanguageCapabilities`` bundle built
once at startup; callers look the bundle up by language code instead of
branching on the language themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

from app.core.config import Settings, get_settings
from app.services.models import MovieCandidate, SearchQuery
from app.services.query_parser import interpret_query
from app.services.tmdb import TMDbClient

logger = logging.getLogger(__name__)


class SearchProvider(Protocol):
    def search(self, text: str) -> list[MovieCandidate]:
        """Return ordered candidates; raise ``ProviderError`` on failure."""


class ReleaseOracle(Protocol):
    def check_released(self, identifier: str, title: str, year: int) -> bool:
        """Return the release status; raise ``ProviderError`` on failure."""


@dataclass(frozen=True)
class LanguageCapabilities:
    language: str
    search: SearchProvider
    oracle: ReleaseOracle


class UnsupportedLanguage(LookupError):
    """Raised when no capability bundle exists for a language code."""


class TMDbSearchProvider:
    """TMDb search localized to one TMDb locale such as ``ru-RU``."""

    def __init__(
        self,
        client: TMDbClient,
        *,
        locale: str,
        limit: int,
        parser: Callable[[str], SearchQuery] = interpret_query,
    ) -> None:
        self.client = client
        self.locale = locale
        self.region = _region_of(locale)
        self.limit = limit
        self.parser = parser

    def search(self, text: str) -> list[MovieCandidate]:
        query = self.parser(text)
        logger.debug("Searching TMDb (%s) for %s", self.locale, query)
        return self.client.search_movies(
            title=query.title,
            year=query.year,
            language=self.locale,
            region=self.region,
            limit=self.limit,
        )


class TMDbReleaseOracle:
    """Answers whether a movie is out in the region behind a TMDb locale."""

    def __init__(self, client: TMDbClient, *, locale: str) -> None:
        self.client = client
        self.region = _region_of(locale)

    def check_released(self, identifier: str, title: str, year: int) -> bool:
        return self.client.is_released(
            imdb_id=identifier,
            title=title,
            year=year,
            region=self.region,
        )


def _region_of(locale: str) -> str | None:
    _, _, region = locale.partition("-")
    return region.upper() or None


def build_language_registry(
    settings: Settings | None = None,
    *,
    client: TMDbClient | None = None,
) -> dict[str, LanguageCapabilities]:
    """Resolve the capability bundle for every configured language."""

    settings = settings or get_settings()
    tmdb = client or TMDbClient()
    registry = {
        language: LanguageCapabilities(
            language=language,
            search=TMDbSearchProvider(
                tmdb,
                locale=locale,
                limit=settings.search_result_limit,
            ),
            oracle=TMDbReleaseOracle(tmdb, locale=locale),
        )
        for language, locale in settings.tmdb_locales.items()
    }
    logger.info("Configured release providers for languages: %s", ", ".join(sorted(registry)))
    return registry


def capabilities_for(
    registry: Mapping[str, LanguageCapabilities],
    language: str,
) -> LanguageCapabilities:
    try:
        return registry[language]
    except KeyError as exc:
        raise UnsupportedLanguage(language) from exc
