"""
Async HTTP client for the remote store (PostgREST rows + object storage).

Every call returns a RemoteResult instead of raising: network failures and
HTTP errors become `error` strings, with the server's message preserved
verbatim. Whether an error is a duplicate-key / already-exists conflict is
decided in exactly one place, `is_conflict()`.

Authentication uses the access token from the SessionStore; the anon key
is always sent as the `apikey` header.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from fieldsync.config import Settings, get_settings
from fieldsync.remote.session import SessionStore

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = ("duplicate", "already exists")


@dataclass
class RemoteResult:
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_conflict(result: RemoteResult) -> bool:
    """True if a failed write hit an existing row/object.

    HTTP 409 is honoured when the server sends it; otherwise this falls back
    to the free-text markers PostgREST and storage put in their messages.
    """
    if result.ok:
        return False
    if result.status_code == 409:
        return True
    message = result.error.lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


class RemoteStoreClient:
    """
    Thin async wrapper over the remote REST and storage endpoints.

    Pass `transport` to route requests through an httpx.MockTransport in tests.
    """

    def __init__(
        self,
        session: SessionStore,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self._http = httpx.AsyncClient(
            base_url=self._settings.remote_url,
            timeout=self._settings.request_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, use_auth: bool = True) -> Dict[str, str]:
        headers = {"apikey": self._settings.remote_anon_key}
        token = self._session.access_token() if use_auth else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, url: str, *, use_auth: bool = True, **kwargs) -> RemoteResult:
        headers = self._headers(use_auth)
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return RemoteResult(error=f"Network error: {exc}")

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if response.is_success:
            return RemoteResult(data=body, status_code=response.status_code)
        return RemoteResult(error=_error_message(body, response), status_code=response.status_code)

    # ── Rows ──────────────────────────────────────────────────────────────────

    async def select(self, table: str, columns: str = "*", filters: Optional[Dict[str, Any]] = None) -> RemoteResult:
        params = {"select": columns}
        for key, value in (filters or {}).items():
            params[key] = f"eq.{value}"
        return await self._request("GET", f"/rest/v1/{table}", params=params)

    async def insert(self, table: str, row: Dict[str, Any]) -> RemoteResult:
        return await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )

    async def update(self, table: str, row: Dict[str, Any], filters: Dict[str, Any]) -> RemoteResult:
        params = {key: f"eq.{value}" for key, value in filters.items()}
        return await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=params,
            json=row,
            headers={"Prefer": "return=representation"},
        )

    # ── Storage ───────────────────────────────────────────────────────────────

    async def upload_file(
        self, bucket: str, path: str, data: bytes, content_type: str = "image/jpeg"
    ) -> RemoteResult:
        return await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type},
        )

    # ── Utility ───────────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        """True if the remote answered at all (used as the connectivity probe)."""
        try:
            response = await self._http.get("/rest/v1/", headers=self._headers(use_auth=False))
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async def sign_in(self, email: str, password: str) -> RemoteResult:
        """Exchange email + password for session tokens (setup wizard only)."""
        return await self._request(
            "POST",
            "/auth/v1/token",
            use_auth=False,
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )


def _error_message(body: Any, response: httpx.Response) -> str:
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "msg"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body:
        return body
    return f"HTTP {response.status_code}"
