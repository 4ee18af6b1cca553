"""Thin wrapper around the TMDb API to search movies and read release dates."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import logging

import httpx

from app.core.config import get_settings
from app.models import normalize_title
from app.services.models import MovieCandidate, ProviderError


logger = logging.getLogger(__name__)

# 2 => limited theatrical, 3 => theatrical, 4 => digital per TMDb docs
RELEASED_TYPES = frozenset({2, 3, 4})


class TMDbError(ProviderError):
    """Base exception for TMDb-related failures."""


class TMDbNotFound(TMDbError):
    """Raised when TMDb cannot resolve a movie for the given identifier."""


@dataclass
class TMDbReleaseInfo:
    date: date
    release_type: int


class TMDbClient:
    """Simple TMDb HTTP client using API key auth."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.tmdb_api_key
        self.base_url = (base_url or settings.tmdb_base_url).rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self.transport = transport

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise TMDbError("TMDB_API_KEY is not configured")
        url = f"{self.base_url}{path}"
        query = {"api_key": self.api_key}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = client.request(method, url, params=query)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise TMDbError(f"{method} {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise TMDbError(f"{method} {path} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise TMDbError(f"{method} {path} returned an unexpected payload")
        return payload

    def search_movies(
        self,
        *,
        title: str,
        year: int | None = None,
        language: str | None = None,
        region: str | None = None,
        limit: int | None = None,
    ) -> list[MovieCandidate]:
        """Search TMDb and return candidates that carry an IMDb identifier."""

        payload = self._request(
            "GET",
            "/search/movie",
            params={
                "query": title,
                "include_adult": False,
                "language": language,
                "year": year,
                "region": region,
            },
        )
        results = payload.get("results", [])
        logger.debug("TMDb search payload: %s", payload)
        if limit is not None:
            results = results[:limit]

        candidates: list[MovieCandidate] = []
        for item in results:
            release_year = self._parse_year(item.get("release_date"))
            if release_year is None:
                continue
            try:
                imdb_id = self._lookup_imdb_id(item["id"])
            except TMDbError as exc:
                logger.warning("Skipping TMDb movie %s: %s", item["id"], exc)
                continue
            if not imdb_id:
                continue
            candidates.append(
                MovieCandidate(
                    id=imdb_id,
                    title=item.get("title") or item.get("original_title") or title,
                    year=release_year,
                    tmdb_id=item["id"],
                )
            )
        return candidates

    def is_released(
        self,
        *,
        imdb_id: str,
        title: str,
        year: int,
        region: str | None,
        today: date | None = None,
    ) -> bool:
        """True once a theatrical or digital release in ``region`` is in the past."""

        today = today or date.today()
        tmdb_id = self.find_tmdb_id(imdb_id=imdb_id, title=title, year=year)
        releases = self.release_dates(tmdb_id, region=region)
        return any(
            info.release_type in RELEASED_TYPES and info.date <= today
            for info in releases
        )

    def find_tmdb_id(self, *, imdb_id: str, title: str, year: int) -> int:
        payload = self._request(
            "GET",
            f"/find/{imdb_id}",
            params={"external_source": "imdb_id"},
        )
        results = payload.get("movie_results") or []
        if results:
            return results[0]["id"]

        # Identifier unknown to TMDb; fall back to an exact title/year match.
        payload = self._request("GET", "/search/movie", params={"query": title, "year": year})
        for item in payload.get("results", []):
            if self._parse_year(item.get("release_date")) != year:
                continue
            if _same_title(title, item.get("title")) or _same_title(title, item.get("original_title")):
                return item["id"]
        raise TMDbNotFound(f"TMDb has no movie for {imdb_id} ({title}, {year})")

    def release_dates(self, tmdb_id: int, *, region: str | None) -> list[TMDbReleaseInfo]:
        payload = self._request("GET", f"/movie/{tmdb_id}/release_dates")
        releases: list[TMDbReleaseInfo] = []
        for entry in payload.get("results", []):
            if region and entry.get("iso_3166_1") != region:
                continue
            for info in entry.get("release_dates", []):
                parsed = self._parse_date(info.get("release_date"))
                if parsed is None:
                    continue
                releases.append(TMDbReleaseInfo(parsed, int(info.get("type") or 0)))
        releases.sort(key=lambda r: r.date)
        return releases

    def _lookup_imdb_id(self, tmdb_id: int) -> str | None:
        payload = self._request("GET", f"/movie/{tmdb_id}/external_ids")
        return payload.get("imdb_id") or None

    @staticmethod
    def _parse_date(raw: str | None) -> date | None:
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw[:10]).date()
        except ValueError:
            return None

    @classmethod
    def _parse_year(cls, raw: str | None) -> int | None:
        parsed = cls._parse_date(raw)
        return parsed.year if parsed else None


def _same_title(expected: str, candidate: str | None) -> bool:
    if not candidate:
        return False
    return normalize_title(expected).casefold() == normalize_title(candidate).casefold()
