from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator, Dict, Optional

import httpx

from .auth import RefreshCoordinator
from .config import debug_print, log_http_status
from .credentials import CredentialStore

# Never decorated with credentials and never routed through the refresh coordinator.
SKIP_AUTH_PREFIXES = ("/auth/", "/public/")

ANONYMOUS_TOKEN_HEADER = "X-Anonymous-Token"


class RequestDispatcher:
    """Attaches credentials to outgoing requests and replays them once after a token refresh."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialStore,
        coordinator: RefreshCoordinator,
    ) -> None:
        self._client = client
        self.credentials = credentials
        self.coordinator = coordinator

    def _relative_path(self, url: str) -> str:
        path = httpx.URL(str(url)).path or "/"
        base_path = self._client.base_url.path.rstrip("/")
        if base_path and path.startswith(base_path + "/"):
            path = path[len(base_path):]
        return path

    def is_auth_exempt(self, url: str) -> bool:
        path = self._relative_path(url)
        return any(path.startswith(prefix) for prefix in SKIP_AUTH_PREFIXES)

    def auth_headers(self) -> Dict[str, str]:
        access_token = self.credentials.access_token
        if access_token:
            return {"Authorization": f"Bearer {access_token}"}
        anonymous_token = self.credentials.anonymous_token
        if anonymous_token:
            return {ANONYMOUS_TOKEN_HEADER: anonymous_token}
        return {}

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self._send(method, url, stream=False, **kwargs)

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs) -> AsyncIterator[httpx.Response]:
        response = await self._send(method, url, stream=True, **kwargs)
        try:
            yield response
        finally:
            await response.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        stream: bool,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        exempt = self.is_auth_exempt(url)
        request_headers = dict(headers or {})
        if not exempt:
            request_headers.update(self.auth_headers())

        request = self._client.build_request(method, url, headers=request_headers, **kwargs)
        response = await self._client.send(request, stream=stream)
        log_http_status(response.status_code, f"{method} {url}")

        if response.status_code == HTTPStatus.UNAUTHORIZED and not exempt:
            await response.aclose()
            access_token = await self.coordinator.handle_unauthorized()
            request_headers.pop(ANONYMOUS_TOKEN_HEADER, None)
            request_headers["Authorization"] = f"Bearer {access_token}"
            debug_print(f"🔄 Replaying {method} {url} with refreshed token")
            retry = self._client.build_request(method, url, headers=request_headers, **kwargs)
            response = await self._client.send(retry, stream=stream)
            log_http_status(response.status_code, f"{method} {url} (retried)")

        if response.status_code < HTTPStatus.BAD_REQUEST:
            self.coordinator.record_success()
        return response
