import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

import httpx

from .config import (
    FAILURE_RESET_INTERVAL_SECONDS,
    MAX_RETRY_ATTEMPTS,
    REFRESH_TIMEOUT_SECONDS,
    REFRESH_WAIT_TIMEOUT_SECONDS,
    debug_print,
    log_http_status,
)
from .credentials import ACCESS_TOKEN_KEY, CredentialStore
from .errors import AuthExhaustedError, NoRefreshTokenError, RefreshTimeoutError, SessionExpiredError

REFRESH_PATH = "/auth/refresh/"


@dataclass
class RefreshState:
    is_refreshing: bool = False
    waiters: Deque["asyncio.Future[str]"] = field(default_factory=deque)
    failed_request_count: int = 0


class RefreshCoordinator:
    """
    Singleflight gate for access-token refresh.

    The first 401 starts one refresh call; 401s arriving while it is in flight
    wait on a future that is resolved with the new access token or rejected
    with `SessionExpiredError`. After `max_retry_attempts` refreshes without a
    success the coordinator logs out instead of refreshing again.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialStore,
        *,
        on_logout: Optional[Callable[[], None]] = None,
        refresh_path: str = REFRESH_PATH,
        refresh_timeout: float = REFRESH_TIMEOUT_SECONDS,
        wait_timeout: float = REFRESH_WAIT_TIMEOUT_SECONDS,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
        reset_interval: float = FAILURE_RESET_INTERVAL_SECONDS,
    ) -> None:
        self._client = client
        self.credentials = credentials
        self._on_logout = on_logout
        self.refresh_path = refresh_path
        self.refresh_timeout = float(refresh_timeout)
        self.wait_timeout = float(wait_timeout)
        self.max_retry_attempts = int(max_retry_attempts)
        self.reset_interval = float(reset_interval)
        self.state = RefreshState()
        self.refresh_calls = 0
        self._reset_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the periodic failure-counter reset (needs a running loop)."""
        if self._reset_task is None or self._reset_task.done():
            self._reset_task = asyncio.get_running_loop().create_task(self._periodic_reset())

    async def aclose(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()
            try:
                await self._reset_task
            except asyncio.CancelledError:
                pass
            self._reset_task = None

    async def _periodic_reset(self) -> None:
        while True:
            await asyncio.sleep(self.reset_interval)
            if self.state.failed_request_count:
                debug_print(f"🔄 Resetting auth failure counter (was {self.state.failed_request_count})")
            self.state.failed_request_count = 0

    # --- Counter ---

    def record_success(self) -> None:
        self.state.failed_request_count = 0

    @property
    def retry_ceiling_reached(self) -> bool:
        return self.state.failed_request_count >= self.max_retry_attempts

    # --- 401 handling ---

    async def handle_unauthorized(self) -> str:
        """Return a fresh access token for replaying a request that got a 401."""
        if self.state.is_refreshing:
            return await self._wait_for_refresh()
        if self.retry_ceiling_reached:
            debug_print("🔒 Max retry attempts reached, stopping requests")
            self._logout()
            raise AuthExhaustedError()
        return await self._refresh()

    async def _refresh(self) -> str:
        self.state.is_refreshing = True
        self.state.failed_request_count += 1
        try:
            access = await self._request_new_access()
        except asyncio.CancelledError:
            self._reject_waiters()
            raise
        except (httpx.HTTPError, NoRefreshTokenError, ValueError) as e:
            debug_print(f"❌ Token refresh failed: {e}")
            self._reject_waiters()
            self._logout()
            raise SessionExpiredError() from e
        finally:
            self.state.is_refreshing = False

        self.state.failed_request_count = 0
        debug_print(f"🔑 Access token refreshed, resuming {len(self.state.waiters)} waiting request(s)")
        self._resolve_waiters(access)
        return access

    async def _request_new_access(self) -> str:
        refresh = self.credentials.refresh_token
        if not refresh:
            raise NoRefreshTokenError()

        self.refresh_calls += 1
        response = await self._client.post(
            self.refresh_path,
            json={"refresh": refresh},
            headers={"Content-Type": "application/json"},
            timeout=self.refresh_timeout,
        )
        log_http_status(response.status_code, "Token refresh")
        response.raise_for_status()

        data = response.json()
        access = data.get("access") if isinstance(data, dict) else None
        if not isinstance(access, str) or not access:
            raise ValueError("Refresh response did not include an access token")
        self.credentials.set(ACCESS_TOKEN_KEY, access)
        return access

    async def _wait_for_refresh(self) -> str:
        future: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self.state.waiters.append(future)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            debug_print(f"⏱️  Gave up waiting for token refresh after {self.wait_timeout}s")
            raise RefreshTimeoutError() from None
        finally:
            if not future.done():
                future.cancel()
            try:
                self.state.waiters.remove(future)
            except ValueError:
                pass

    def _drain_waiters(self) -> Deque["asyncio.Future[str]"]:
        waiters, self.state.waiters = self.state.waiters, deque()
        return waiters

    def _resolve_waiters(self, access: str) -> None:
        for future in self._drain_waiters():
            if not future.done():
                future.set_result(access)

    def _reject_waiters(self) -> None:
        for future in self._drain_waiters():
            if not future.done():
                future.set_exception(SessionExpiredError())

    def _logout(self) -> None:
        self.credentials.clear()
        if self._on_logout is not None:
            self._on_logout()
