"""Turn a user's free-text search message into a structured movie query."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Iterable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.tools import StructuredTool
from langchain_openai import ChatOpenAI

from app.core.config import get_settings
from app.services.models import SearchQuery

logger = logging.getLogger(__name__)

_TRAILING_YEAR = re.compile(r"^(?P<title>.+?)[\s,]*\(?(?P<year>(?:18|19|20)\d{2})\)?$")
_MAX_YEARS_AHEAD = 5

_SYSTEM_PROMPT = (
    "You extract movie search parameters from a chat message. "
    "Fix obvious typos and spacing in the title but keep the user's language."
    " Only pass a year when the user mentions one. Always call movie_query."
)


def _movie_query_tool_func(title: str, year: int | None = None) -> dict[str, Any]:
    """Echo the normalized search parameters back to the caller."""
    return {"title": title, "year": year}


_MOVIE_QUERY_TOOL = StructuredTool.from_function(
    func=_movie_query_tool_func,
    name="movie_query",
    description="Submit the movie title (and optional release year) to search for.",
)


def split_title_and_year(text: str) -> SearchQuery:
    """'Dune 2021' / 'Dune (2021)' -> SearchQuery('Dune', 2021)."""

    cleaned = " ".join(text.split())
    match = _TRAILING_YEAR.match(cleaned)
    if match and match.group("title").strip():
        year = int(match.group("year"))
        # "Blade Runner 2049" names a year that is part of the title
        if year <= date.today().year + _MAX_YEARS_AHEAD:
            return SearchQuery(title=match.group("title").strip(), year=year)
    return SearchQuery(title=cleaned)


def interpret_query(text: str) -> SearchQuery:
    """Use LangChain (ChatOpenAI + StructuredTool) when configured, regex otherwise."""

    settings = get_settings()
    fallback = split_title_and_year(text)
    if not settings.openai_api_key or not fallback.title:
        return fallback

    llm = ChatOpenAI(
        temperature=0.0,
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        timeout=settings.provider_timeout_seconds,
    )
    llm_with_tools = llm.bind_tools([_MOVIE_QUERY_TOOL])

    try:
        ai_message = llm_with_tools.invoke(
            [
                SystemMessage(content=_SYSTEM_PROMPT),
                HumanMessage(content=text),
            ]
        )
    except Exception as exc:  # pragma: no cover - network failure
        logger.warning("LangChain/OpenAI call failed, using raw query: %s", exc)
        return fallback

    payload = _run_tool(ai_message.tool_calls)
    if not payload or not str(payload.get("title") or "").strip():
        logger.info("LLM response missing movie_query tool call, using raw query")
        return fallback
    return SearchQuery(title=str(payload["title"]).strip(), year=payload.get("year"))


def _run_tool(tool_calls: Iterable[Any]) -> dict[str, Any] | None:
    if not tool_calls:
        return None
    for call in tool_calls:
        name = getattr(call, "name", None) or call.get("name")
        if name != _MOVIE_QUERY_TOOL.name:
            continue
        args = getattr(call, "args", None) or call.get("args") or {}
        logger.debug("LangChain tool args via LLM: %s", args)
        return _MOVIE_QUERY_TOOL.invoke(args)
    return None
