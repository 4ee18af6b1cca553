"""FastAPI entrypoint wiring the conversational flow and the release sweep."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.config import configure_langchain_env, get_settings
from app.db import SessionLocal, UserRepository, init_models, session_scope
from app.services.models import MovieCandidate, TrackedMovie
from app.services.notifier import NotificationDispatcher, ReleaseNotifier, build_dispatcher
from app.services.providers import LanguageCapabilities, build_language_registry
from app.services.scheduler import build_release_scheduler
from app.services.search import SearchResolver, StaleSelectionError
from app.services.sessions import ConversationSession, InMemorySessionStore
from app.services.watchlist import RejectionReason, WatchlistManager

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again."
NOTHING_FOUND = "Nothing was found. Try another search."
NO_CONVERSATION = "There is no search in progress. Start a new search."
STALE_SELECTION = "These search results are out of date. Please search again."
NOTHING_SELECTED = "Pick a movie from the search results first."
MOVIE_ADDED = "Added! You will get a message as soon as it is released."
REJECTION_MESSAGES = {
    RejectionReason.ALREADY_RELEASED: "This movie has already been released, there is nothing to wait for.",
    RejectionReason.ALREADY_OBSERVING: "You are already waiting for this movie.",
    RejectionReason.RELEASE_UNKNOWN: "Could not check the release status right now. Please try again later.",
}


@lru_cache(maxsize=1)
def get_language_registry() -> dict[str, LanguageCapabilities]:
    return build_language_registry()


@lru_cache(maxsize=1)
def get_session_store() -> InMemorySessionStore:
    return InMemorySessionStore(ttl_seconds=get_settings().session_ttl_seconds)


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
    return build_dispatcher()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_search_resolver(
    registry: dict[str, LanguageCapabilities] = Depends(get_language_registry),
) -> SearchResolver:
    return SearchResolver(registry)


def get_watchlist(
    registry: dict[str, LanguageCapabilities] = Depends(get_language_registry),
    factory: sessionmaker = Depends(get_session_factory),
) -> WatchlistManager:
    return WatchlistManager(registry, session_factory=factory)


def get_notifier(
    registry: dict[str, LanguageCapabilities] = Depends(get_language_registry),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    factory: sessionmaker = Depends(get_session_factory),
) -> ReleaseNotifier:
    return ReleaseNotifier(registry, dispatcher, session_factory=factory)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Ensure tables, then run the release sweep now and on a fixed interval."""

    settings = get_settings()
    configure_langchain_env()
    init_models()
    scheduler = None
    if settings.scheduler_enabled:
        notifier = ReleaseNotifier(get_language_registry(), get_dispatcher())
        scheduler = build_release_scheduler(
            notifier,
            interval_hours=settings.release_check_interval_hours,
        )
        scheduler.start()
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Release Watch", lifespan=lifespan)
users = UserRepository()


class StartRequest(BaseModel):
    language: str | None = None
    username: str | None = None


class LanguageRequest(BaseModel):
    language: str = Field(..., description="Preferred language code, e.g. 'en'")


class UserResponse(BaseModel):
    id: int
    language: str
    username: str | None = None


class QueryRequest(BaseModel):
    query: str = Field(..., description="Free-text movie title, optionally with a year")


class SelectRequest(BaseModel):
    index: int
    movie_id: str | None = None


class CandidateResponse(BaseModel):
    index: int
    id: str
    title: str
    year: int
    label: str


class SearchResponse(BaseModel):
    found: bool
    movies: list[CandidateResponse] = Field(default_factory=list)
    selected: CandidateResponse | None = None
    message: str | None = None


class MovieResponse(BaseModel):
    id: str
    title: str
    year: int
    released: bool
    unreleased_languages: list[str]


class AddResponse(BaseModel):
    added: bool
    message: str
    reason: RejectionReason | None = None
    movie: MovieResponse | None = None


class MessageResponse(BaseModel):
    message: str


class SweepResponse(BaseModel):
    checked: int
    released: list[str]
    notified: int
    failed_deliveries: int
    unknown: int
    errors: list[str]


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure while handling %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": GENERIC_ERROR},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Global error has happened: %r", exc, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": GENERIC_ERROR},
    )


@app.post("/users/{user_id}/start", response_model=UserResponse)
def start(
    user_id: int,
    payload: StartRequest,
    factory: sessionmaker = Depends(get_session_factory),
    store: InMemorySessionStore = Depends(get_session_store),
) -> UserResponse:
    """First contact: register the user and reset any conversation."""

    language = _validate_language(payload.language or get_settings().default_language)
    store.clear(user_id)
    with session_scope(factory) as session:
        user = users.get_or_create(session, user_id, language=language, username=payload.username)
        if payload.language:
            users.set_language(session, user, language)
        users.touch(session, user)
        return UserResponse(id=user.id, language=user.language, username=user.username)


@app.put("/users/{user_id}/language", response_model=UserResponse)
def change_language(
    user_id: int,
    payload: LanguageRequest,
    factory: sessionmaker = Depends(get_session_factory),
    store: InMemorySessionStore = Depends(get_session_store),
) -> UserResponse:
    language = _validate_language(payload.language)
    store.clear(user_id)
    with session_scope(factory) as session:
        user = users.get_or_create(session, user_id, language=language)
        users.set_language(session, user, language)
        users.touch(session, user)
        return UserResponse(id=user.id, language=user.language, username=user.username)


@app.post("/users/{user_id}/search", response_model=SearchResponse)
def begin_search(
    user_id: int,
    factory: sessionmaker = Depends(get_session_factory),
    store: InMemorySessionStore = Depends(get_session_store),
) -> SearchResponse:
    """Enter the search flow with a fresh conversation in the user's language."""

    language = _register_activity(factory, user_id)
    store.create(user_id, language=language)
    return SearchResponse(found=False, message="Which movie are you waiting for?")


@app.post("/users/{user_id}/search/query", response_model=SearchResponse)
def search_query(
    user_id: int,
    payload: QueryRequest,
    factory: sessionmaker = Depends(get_session_factory),
    store: InMemorySessionStore = Depends(get_session_store),
    resolver: SearchResolver = Depends(get_search_resolver),
) -> SearchResponse:
    text = payload.query.strip()
    if not text:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="query must not be empty",
        )
    conversation = _active_conversation(store, user_id)
    _register_activity(factory, user_id)
    movies = resolver.resolve(conversation, text)
    store.save(user_id, conversation)
    if not movies:
        return SearchResponse(found=False, message=NOTHING_FOUND)
    return _search_response(conversation)


@app.post("/users/{user_id}/search/select", response_model=SearchResponse)
def select_movie(
    user_id: int,
    payload: SelectRequest,
    store: InMemorySessionStore = Depends(get_session_store),
    resolver: SearchResolver = Depends(get_search_resolver),
) -> SearchResponse:
    conversation = _active_conversation(store, user_id)
    try:
        resolver.select(conversation, payload.index, movie_id=payload.movie_id)
    except StaleSelectionError as exc:
        logger.debug("Stale selection from user %s: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=STALE_SELECTION) from exc
    store.save(user_id, conversation)
    return _search_response(conversation)


@app.post("/users/{user_id}/search/back", response_model=SearchResponse)
def back_to_results(
    user_id: int,
    store: InMemorySessionStore = Depends(get_session_store),
    resolver: SearchResolver = Depends(get_search_resolver),
) -> SearchResponse:
    conversation = _active_conversation(store, user_id)
    resolver.back_to_results(conversation)
    store.save(user_id, conversation)
    return _search_response(conversation)


@app.post("/users/{user_id}/search/add", response_model=AddResponse)
def add_selected_movie(
    user_id: int,
    factory: sessionmaker = Depends(get_session_factory),
    store: InMemorySessionStore = Depends(get_session_store),
    watchlist: WatchlistManager = Depends(get_watchlist),
) -> AddResponse:
    conversation = _active_conversation(store, user_id)
    if conversation.selected_movie is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=NOTHING_SELECTED)

    # a rejected add leaves the user record untouched
    outcome = watchlist.add_selected(user_id, conversation)
    if not outcome.added:
        store.save(user_id, conversation)
        return AddResponse(
            added=False,
            reason=outcome.reason,
            message=REJECTION_MESSAGES[outcome.reason],
        )
    _register_activity(factory, user_id)
    store.clear(user_id)
    return AddResponse(added=True, message=MOVIE_ADDED, movie=_movie_response(outcome.movie))


@app.post("/users/{user_id}/menu", response_model=MessageResponse)
def back_to_menu(
    user_id: int,
    store: InMemorySessionStore = Depends(get_session_store),
) -> MessageResponse:
    store.clear(user_id)
    return MessageResponse(message="What's next?")


@app.get("/users/{user_id}/movies", response_model=list[MovieResponse])
def list_movies(
    user_id: int,
    factory: sessionmaker = Depends(get_session_factory),
    watchlist: WatchlistManager = Depends(get_watchlist),
) -> list[MovieResponse]:
    _register_activity(factory, user_id)
    return [_movie_response(movie) for movie in watchlist.list_movies(user_id)]


@app.delete("/users/{user_id}/movies/{movie_id}", response_model=MessageResponse)
def remove_movie(
    user_id: int,
    movie_id: str,
    watchlist: WatchlistManager = Depends(get_watchlist),
) -> MessageResponse:
    if not watchlist.remove(user_id, movie_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This movie is not in your list.",
        )
    return MessageResponse(message="Removed from your list.")


@app.post("/releases/sweep", response_model=SweepResponse)
def run_release_sweep(notifier: ReleaseNotifier = Depends(get_notifier)) -> SweepResponse:
    report = notifier.run_sweep()
    return SweepResponse(
        checked=report.checked,
        released=report.released,
        notified=report.notified,
        failed_deliveries=report.failed_deliveries,
        unknown=report.unknown,
        errors=report.errors,
    )


def _validate_language(language: str) -> str:
    supported = get_settings().supported_languages
    if language not in supported:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"language must be one of: {', '.join(supported)}",
        )
    return language


def _register_activity(factory: sessionmaker, user_id: int) -> str:
    """Create the user on first contact, bump last activity, return their language."""

    with session_scope(factory) as session:
        user = users.get_or_create(session, user_id, language=get_settings().default_language)
        users.touch(session, user)
        return user.language


def _active_conversation(store: InMemorySessionStore, user_id: int) -> ConversationSession:
    conversation = store.get(user_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=NO_CONVERSATION)
    return conversation


def _search_response(conversation: ConversationSession) -> SearchResponse:
    movies = conversation.movies or []
    selected = None
    if conversation.selected_movie is not None:
        selected = _candidate_response(movies.index(conversation.selected_movie), conversation.selected_movie)
    return SearchResponse(
        found=bool(movies),
        movies=[_candidate_response(index, movie) for index, movie in enumerate(movies)],
        selected=selected,
    )


def _candidate_response(index: int, movie: MovieCandidate) -> CandidateResponse:
    return CandidateResponse(
        index=index,
        id=movie.id,
        title=movie.title,
        year=movie.year,
        label=movie.label,
    )


def _movie_response(movie: TrackedMovie) -> MovieResponse:
    return MovieResponse(
        id=movie.id,
        title=movie.title,
        year=movie.year,
        released=movie.released,
        unreleased_languages=sorted(movie.unreleased_languages),
    )
