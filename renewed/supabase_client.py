"""Lightweight client for the hosted Supabase backend.

Three backend surfaces are used by the application:

* PostgREST (``/rest/v1``) for rows of ``sections``, ``visuals`` and
  ``reflections``;
* Storage (``/storage/v1``) to request signed URLs and download text objects;
* Auth (``/auth/v1/user``) to resolve an access token to a user.

Credentials are read from ``SUPABASE_URL`` and ``SUPABASE_ANON_KEY``.  They
are never sent to the browser; the user's own access token is forwarded so
that row-level security applies to journal rows.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from .config import DEFAULT_BACKEND_TIMEOUT, load_backend_settings


DEFAULT_TIMEOUT = DEFAULT_BACKEND_TIMEOUT
# PostgREST code for "single object requested, zero rows returned"
NO_ROWS_CODE = "PGRST116"

_LOGGER = logging.getLogger("renewed.supabase")


class SupabaseError(RuntimeError):
    """Raised when the backend responds with an error."""

    def __init__(self, message: str, *, status_code: int = 0, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_not_found(self) -> bool:
        return self.code == NO_ROWS_CODE or self.status_code == 404


@dataclass(slots=True)
class SupabaseClient:
    url: str
    api_key: str
    timeout: float = DEFAULT_TIMEOUT
    transport: httpx.BaseTransport | None = None

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.url.rstrip("/"),
            timeout=self.timeout,
            transport=self.transport,
        )

    def _headers(self, access_token: str | None = None) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {access_token or self.api_key}",
        }

    # ------------------------------------------------------------------
    # PostgREST
    # ------------------------------------------------------------------
    def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Mapping[str, Any] | None = None,
        extra: Mapping[str, str] | None = None,
        order: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
        offset: int | None = None,
        single: bool = False,
        access_token: str | None = None,
    ) -> Any:
        """Return rows of ``table`` matching equality ``filters``.

        ``extra`` carries raw PostgREST operators (``or``, ``tags=ov.{..}``).
        With ``single=True`` exactly one row is expected and a missing row
        raises :class:`SupabaseError` with ``is_not_found`` set.
        """

        params: Dict[str, str] = {"select": columns}
        params.update(self._eq_filters(filters))
        if extra:
            params.update(extra)
        if order:
            params["order"] = f"{order}.{'asc' if ascending else 'desc'}"
        if limit is not None:
            params["limit"] = str(int(limit))
        if offset is not None:
            params["offset"] = str(int(offset))

        headers = self._headers(access_token)
        if single:
            headers["Accept"] = "application/vnd.pgrst.object+json"
        with self._client() as client:
            resp = client.get(f"/rest/v1/{table}", params=params, headers=headers)
        return self._parse(resp, f"select {table}")

    def insert(
        self, table: str, row: Mapping[str, Any], *, access_token: str | None = None
    ) -> Dict[str, Any]:
        headers = self._headers(access_token)
        headers["Prefer"] = "return=representation"
        headers["Accept"] = "application/vnd.pgrst.object+json"
        with self._client() as client:
            resp = client.post(f"/rest/v1/{table}", json=dict(row), headers=headers)
        return self._parse(resp, f"insert {table}")

    def update(
        self,
        table: str,
        fields: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
        access_token: str | None = None,
    ) -> Dict[str, Any]:
        headers = self._headers(access_token)
        headers["Prefer"] = "return=representation"
        headers["Accept"] = "application/vnd.pgrst.object+json"
        with self._client() as client:
            resp = client.patch(
                f"/rest/v1/{table}",
                params=self._eq_filters(filters),
                json=dict(fields),
                headers=headers,
            )
        return self._parse(resp, f"update {table}")

    def delete(
        self,
        table: str,
        *,
        filters: Mapping[str, Any],
        access_token: str | None = None,
    ) -> List[Dict[str, Any]]:
        headers = self._headers(access_token)
        headers["Prefer"] = "return=representation"
        with self._client() as client:
            resp = client.delete(
                f"/rest/v1/{table}", params=self._eq_filters(filters), headers=headers
            )
        return self._parse(resp, f"delete {table}") or []

    def rpc(
        self,
        function: str,
        params: Mapping[str, Any] | None = None,
        *,
        access_token: str | None = None,
    ) -> Any:
        """Call a database function exposed under ``/rest/v1/rpc``."""

        with self._client() as client:
            resp = client.post(
                f"/rest/v1/rpc/{function}",
                json=dict(params or {}),
                headers=self._headers(access_token),
            )
        return self._parse(resp, f"rpc {function}")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def sign(self, bucket: str, path: str, expires_in: int) -> str:
        """Ask the storage service for a time-limited URL of ``path``."""

        with self._client() as client:
            resp = client.post(
                f"/storage/v1/object/sign/{bucket}/{quote(path)}",
                json={"expiresIn": int(expires_in)},
                headers=self._headers(),
            )
        data = self._parse(resp, f"sign {bucket}/{path}")
        signed = (data or {}).get("signedURL") or (data or {}).get("signedUrl")
        if not isinstance(signed, str) or not signed:
            raise SupabaseError(f"sign {bucket}/{path}: no signed URL returned")
        if signed.startswith("http"):
            return signed
        return f"{self.url.rstrip('/')}/storage/v1{signed}"

    def download(self, bucket: str, path: str) -> str:
        with self._client() as client:
            resp = client.get(
                f"/storage/v1/object/{bucket}/{quote(path)}", headers=self._headers()
            )
        if resp.status_code != 200:
            self._raise(resp, f"download {bucket}/{path}")
        return resp.text

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        """Return the user owning ``access_token`` or ``None`` if it is invalid."""

        with self._client() as client:
            resp = client.get("/auth/v1/user", headers=self._headers(access_token))
        if resp.status_code in (401, 403):
            return None
        data = self._parse(resp, "auth user")
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return data

    # ------------------------------------------------------------------
    @staticmethod
    def _eq_filters(filters: Mapping[str, Any] | None) -> Dict[str, str]:
        if not filters:
            return {}
        return {column: f"eq.{value}" for column, value in filters.items()}

    def _parse(self, resp: httpx.Response, operation: str) -> Any:
        if resp.status_code >= 400:
            self._raise(resp, operation)
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _raise(resp: httpx.Response, operation: str) -> None:
        code: str | None = None
        message = resp.text
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code") or body.get("error")
            message = body.get("message") or body.get("msg") or message
        _LOGGER.warning("Supabase %s failed: %s %s", operation, resp.status_code, message)
        raise SupabaseError(
            f"{operation} failed: {resp.status_code} {message}",
            status_code=resp.status_code,
            code=str(code) if code is not None else None,
        )


def build_client_from_env() -> Optional[SupabaseClient]:
    settings = load_backend_settings()
    if not settings.configured:
        return None
    return SupabaseClient(
        url=settings.url or "", api_key=settings.api_key or "", timeout=settings.timeout
    )


__all__ = [
    "SupabaseClient",
    "SupabaseError",
    "build_client_from_env",
    "NO_ROWS_CODE",
]
