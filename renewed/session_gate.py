"""Route protection for page requests.

The guard classifies each request path as public, protected or a
development page, and for protected paths resolves the caller's session
through the auth backend.  Callers without a session are redirected to the
login page with ``returnUrl`` pointing back at the page they asked for.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Dict, Mapping, Optional
from urllib.parse import quote, urlencode

from .errors import UpstreamFailureError
from .models import AuthenticatedUser, RoutesConfig
from .supabase_client import SupabaseClient, SupabaseError


ACCESS_TOKEN_COOKIE = "sb-access-token"

_LOGGER = logging.getLogger("renewed.session_gate")

_NO_INDEX_HEADERS = {
    "X-Robots-Tag": "noindex, nofollow",
    "Cache-Control": "no-cache, no-store, must-revalidate",
}


def _header_value(value: str) -> str:
    """Percent-encode values that HTTP headers (latin-1) cannot carry."""
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        return quote(value, safe="@+.-_")
    return value


class RouteKind(str, Enum):
    PUBLIC = "public"
    PROTECTED = "protected"
    DEV = "dev"
    OTHER = "other"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a guard check: pass through or redirect, plus extra headers."""

    kind: RouteKind
    redirect_url: Optional[str] = None
    user: Optional[AuthenticatedUser] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.redirect_url is None

    @property
    def authenticated(self) -> bool:
        return self.user is not None


def extract_access_token(
    headers: Mapping[str, str], cookies: Mapping[str, str] | None = None
) -> Optional[str]:
    """Return the bearer token from ``Authorization`` or the session cookie."""

    raw = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, token = raw.strip().partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    if cookies:
        cookie_token = (cookies.get(ACCESS_TOKEN_COOKIE) or "").strip()
        if cookie_token:
            return cookie_token
    return None


class SessionGate:
    """Resolves access tokens to users through the auth backend."""

    def __init__(self, client: SupabaseClient | None) -> None:
        self._client = client

    def check(self, access_token: str | None) -> Optional[AuthenticatedUser]:
        if not access_token:
            return None
        if self._client is None:
            raise UpstreamFailureError("Authentication backend is not configured")
        try:
            data = self._client.get_user(access_token)
        except SupabaseError as exc:
            raise UpstreamFailureError(f"Session check failed: {exc}") from exc
        if data is None:
            return None
        return AuthenticatedUser(
            id=str(data["id"]), email=data.get("email"), access_token=access_token
        )


class RouteGuard:
    def __init__(
        self, routes: RoutesConfig, gate: SessionGate, *, skip_auth: bool = False
    ) -> None:
        self._routes = routes
        self._gate = gate
        self._skip_auth = skip_auth

    def classify(self, path: str) -> RouteKind:
        if any(self._matches(path, route) for route in self._routes.public):
            return RouteKind.PUBLIC
        if any(self._matches(path, route) for route in self._routes.protected):
            return RouteKind.PROTECTED
        if any(path.startswith(prefix) for prefix in self._routes.dev):
            return RouteKind.DEV
        return RouteKind.OTHER

    def evaluate(self, path: str, query: str = "", access_token: str | None = None) -> GateDecision:
        if self._skip_auth:
            _LOGGER.debug("Authentication bypassed for %s", path)
            return GateDecision(kind=self.classify(path), headers={"X-Auth-Bypassed": "true"})

        kind = self.classify(path)
        _LOGGER.debug("Route %s classified as %s", path, kind.value)
        if kind is RouteKind.DEV:
            return GateDecision(
                kind=kind,
                headers={"X-Environment": "development", "X-Route-Type": "development"},
            )
        if kind is not RouteKind.PROTECTED:
            return GateDecision(kind=kind)

        try:
            user = self._gate.check(access_token)
        except UpstreamFailureError as exc:
            _LOGGER.error("Session check for %s failed: %s", path, exc)
            params = {"returnUrl": path, "error": "auth_check_failed"}
            return GateDecision(
                kind=kind,
                redirect_url=f"{self._routes.login_path}?{urlencode(params)}",
                headers={"X-Auth-Error": "middleware_failure"},
            )

        if user is None:
            full_path = f"{path}?{query}" if query else path
            login_url = self._routes.login_path
            if path != self._routes.login_path:
                login_url = f"{login_url}?{urlencode({'returnUrl': full_path})}"
            _LOGGER.info("Access to %s denied, redirecting to login", path)
            return GateDecision(kind=kind, redirect_url=login_url, headers=dict(_NO_INDEX_HEADERS))

        return GateDecision(
            kind=kind,
            user=user,
            headers={"X-User-ID": user.id, "X-User-Email": _header_value(user.email or "")},
        )

    @staticmethod
    def _matches(path: str, route: str) -> bool:
        if route == "/":
            return path == "/"
        return path == route or path.startswith(route + "/")


__all__ = [
    "ACCESS_TOKEN_COOKIE",
    "GateDecision",
    "RouteGuard",
    "RouteKind",
    "SessionGate",
    "extract_access_token",
]
