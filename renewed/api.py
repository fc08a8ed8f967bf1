"""FastAPI application serving the guidebook content and journal API."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from functools import lru_cache
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from .cache import BoundedTTLCache, CacheSweeper
from .config import load_config, skip_auth_enabled
from .content_service import ContentService
from .errors import RenewedError, UnauthorizedError
from .journal_service import JournalService
from .models import (
    AppConfig,
    AuthenticatedUser,
    HealthStatus,
    JournalEntryCreate,
    JournalEntryList,
    JournalEntryUpdate,
    SectionSummary,
)
from .session_gate import RouteGuard, SessionGate, extract_access_token
from .supabase_client import SupabaseClient, build_client_from_env


_LOGGER = logging.getLogger("renewed.api")


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_backend_client() -> Optional[SupabaseClient]:
    return build_client_from_env()


@lru_cache(maxsize=1)
def get_cache() -> BoundedTTLCache[Any]:
    settings = get_config().cache
    return BoundedTTLCache(max_size=settings.max_size, default_ttl=settings.default_ttl_sec)


@lru_cache(maxsize=1)
def get_content_service_cached() -> ContentService:
    return ContentService(get_config(), get_cache(), client=get_backend_client())


def get_content_service() -> ContentService:
    return get_content_service_cached()


@lru_cache(maxsize=1)
def get_journal_service_cached() -> JournalService:
    return JournalService(client=get_backend_client())


def get_journal_service() -> JournalService:
    return get_journal_service_cached()


@lru_cache(maxsize=1)
def get_session_gate_cached() -> SessionGate:
    return SessionGate(get_backend_client())


def get_session_gate() -> SessionGate:
    return get_session_gate_cached()


@lru_cache(maxsize=1)
def get_route_guard_cached() -> RouteGuard:
    return RouteGuard(get_config().routes, get_session_gate(), skip_auth=skip_auth_enabled())


def get_route_guard() -> RouteGuard:
    return get_route_guard_cached()


def _resolve(dependency: Callable[[], Any]) -> Any:
    """Call a dependency outside of a route, honouring test overrides."""
    return app.dependency_overrides.get(dependency, dependency)()


def _http_error(exc: RenewedError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


@asynccontextmanager
async def lifespan(_: FastAPI):
    config: AppConfig = _resolve(get_config)
    sweeper = CacheSweeper(_resolve(get_cache), config.cache.sweep_interval_sec)
    _LOGGER.info("Cache sweep every %s seconds", config.cache.sweep_interval_sec)
    task = asyncio.create_task(sweeper.run())
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Renewed", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def route_guard(request: Request, call_next):
    guard: RouteGuard = _resolve(get_route_guard)
    token = extract_access_token(request.headers, request.cookies)
    decision = await run_in_threadpool(
        guard.evaluate, request.url.path, request.url.query, token
    )
    if not decision.allowed:
        _LOGGER.debug("Redirecting %s to %s", request.url.path, decision.redirect_url)
        response: Response = RedirectResponse(decision.redirect_url or "/login")
    else:
        request.state.user = decision.user
        response = await call_next(request)
    for name, value in decision.headers.items():
        response.headers[name] = value
    return response


def get_current_user(
    request: Request, gate: SessionGate = Depends(get_session_gate)
) -> AuthenticatedUser:
    """Resolve the API caller; 401 without a valid bearer token or cookie."""

    token = extract_access_token(request.headers, request.cookies)
    try:
        user = gate.check(token)
    except RenewedError as exc:
        raise _http_error(exc) from exc
    if user is None:
        raise _http_error(UnauthorizedError("Unauthorized"))
    return user


@app.get("/", response_model=HealthStatus)
async def health(service: ContentService = Depends(get_content_service)) -> HealthStatus:
    return HealthStatus(backend="supabase" if service.configured else "unconfigured")


@app.head("/")
async def health_head() -> Response:
    """Lightweight HEAD variant of the health endpoint for platform probes."""

    return Response(status_code=200)


@app.get("/api/book/sections")
def list_sections(service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    try:
        sections = service.list_sections()
    except RenewedError as exc:
        raise _http_error(exc) from exc
    summaries = [SectionSummary.model_validate(s.model_dump()) for s in sections]
    return {"success": True, "data": summaries}


@app.get("/api/book/sections/{slug}")
def get_section(slug: str, service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    try:
        return {"success": True, "data": service.get_section(slug)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.get("/api/audio-tracks")
def audio_tracks(service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    try:
        tracks = service.list_audio_tracks()
    except RenewedError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "tracks": tracks, "count": len(tracks)}


@app.get("/api/chart-visual")
def chart_visual(service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    try:
        return {"success": True, "chart": service.chart_visual()}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.get("/api/content-engine/content")
def list_content_engine(
    section: Optional[str] = Query(None, description="Only blocks of this section"),
    principle: Optional[int] = Query(None, description="Only blocks of this principle number"),
    service: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    try:
        return {"content": service.content_engine(section=section, principle=principle)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.post("/api/content-engine/content", status_code=201)
def create_content_engine(
    payload: Dict[str, Any] = Body(...),
    user: AuthenticatedUser = Depends(get_current_user),
    service: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    try:
        return {"content": service.create_content(payload, access_token=user.access_token)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.get("/api/cache/stats")
def cache_stats(service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    return service.cache_stats().as_dict()


@app.get("/api/journal", response_model=JournalEntryList)
def list_journal_entries(
    page: int = Query(1, description="Page number, starting at 1"),
    limit: int = Query(20, description="Entries per page, capped at 50"),
    search: Optional[str] = Query(None, description="Substring of title or content"),
    reflection_type: Optional[str] = Query(None, alias="type"),
    tags: Optional[str] = Query(None, description="Comma-separated tags"),
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> JournalEntryList:
    tag_list = [tag.strip() for tag in (tags or "").split(",") if tag.strip()]
    try:
        return service.list_entries(
            user,
            page=page,
            limit=limit,
            search=search,
            reflection_type=reflection_type,
            tags=tag_list,
        )
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.post("/api/journal", status_code=201)
def create_journal_entry(
    payload: JournalEntryCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    try:
        return {"entry": service.create_entry(user, payload)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.get("/api/journal/stats")
def journal_stats(
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    try:
        return {"stats": service.stats(user)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.get("/api/journal/{entry_id}")
def get_journal_entry(
    entry_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    try:
        return {"entry": service.get_entry(user, entry_id)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.put("/api/journal/{entry_id}")
def update_journal_entry(
    entry_id: str,
    payload: JournalEntryUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    try:
        return {"entry": service.update_entry(user, entry_id, payload)}
    except RenewedError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/journal/{entry_id}")
def delete_journal_entry(
    entry_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    try:
        service.delete_entry(user, entry_id)
    except RenewedError as exc:
        raise _http_error(exc) from exc
    return {"message": "Journal entry deleted successfully"}


@app.get("/book")
def book_page(request: Request, service: ContentService = Depends(get_content_service)) -> Dict[str, Any]:
    try:
        sections = service.list_sections()
    except RenewedError as exc:
        raise _http_error(exc) from exc
    return {"page": "book", "user": _page_user(request), "sections": sections}


@app.get("/book/{slug}")
def section_page(
    slug: str, request: Request, service: ContentService = Depends(get_content_service)
) -> Dict[str, Any]:
    try:
        section = service.get_section(slug)
    except RenewedError as exc:
        raise _http_error(exc) from exc
    return {"page": "section", "user": _page_user(request), "section": section}


@app.get("/dashboard")
def dashboard_page(request: Request) -> Dict[str, Any]:
    return {"page": "dashboard", "user": _page_user(request)}


def _page_user(request: Request) -> Optional[Dict[str, Any]]:
    user: Optional[AuthenticatedUser] = getattr(request.state, "user", None)
    if user is None:
        return None
    return {"id": user.id, "email": user.email}
