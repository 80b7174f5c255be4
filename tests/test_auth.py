import asyncio

import httpx

from tests._stream_test_utils import BaseClientTest

from arena_client.auth import RefreshCoordinator
from arena_client.credentials import CredentialStore
from arena_client.errors import AuthExhaustedError, RefreshTimeoutError, SessionExpiredError

EXPIRED = {"access_token": "old", "refresh_token": "r"}


class TestSingleflightRefresh(BaseClientTest):
    def setUp(self) -> None:
        super().setUp()
        self.unauthorized = 0
        self.all_unauthorized = asyncio.Event()

    def storm_handler(self, expected_401s: int, refresh_response: httpx.Response):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh/":
                # Hold the refresh open until every concurrent request has seen its 401.
                await self.all_unauthorized.wait()
                await asyncio.sleep(0.05)
                return refresh_response
            if request.headers.get("Authorization") == "Bearer new":
                return httpx.Response(200, json=[])
            self.unauthorized += 1
            if self.unauthorized >= expected_401s:
                self.all_unauthorized.set()
            return httpx.Response(401, json={"detail": "expired"})

        return handler

    async def test_concurrent_401s_share_one_refresh(self):
        client = self.make_client(
            self.storm_handler(5, httpx.Response(200, json={"access": "new"})),
            credentials=dict(EXPIRED),
        )

        responses = await asyncio.gather(*[client.dispatcher.request("GET", "/sessions/") for _ in range(5)])

        self.assertEqual([r.status_code for r in responses], [200] * 5)
        self.assertEqual(client.coordinator.refresh_calls, 1)
        self.assertEqual(client.credentials.access_token, "new")
        self.assertEqual(client.coordinator.state.failed_request_count, 0)
        self.assertFalse(client.coordinator.state.is_refreshing)
        self.assertEqual(len(client.coordinator.state.waiters), 0)
        self.logout.assert_not_called()
        replayed = [r for r in self.requests if r.headers.get("Authorization") == "Bearer new"]
        self.assertEqual(len(replayed), 5)

    async def test_failed_refresh_rejects_every_waiter_and_logs_out_once(self):
        client = self.make_client(
            self.storm_handler(5, httpx.Response(401, json={"detail": "refresh expired"})),
            credentials=dict(EXPIRED, anonymous_token="anon"),
        )

        results = await asyncio.gather(
            *[client.dispatcher.request("GET", "/sessions/") for _ in range(5)],
            return_exceptions=True,
        )

        self.assertEqual(len(results), 5)
        for result in results:
            self.assertIsInstance(result, SessionExpiredError)
            self.assertEqual(str(result), "Session expired. Please sign in again.")
        self.assertEqual(client.coordinator.refresh_calls, 1)
        self.logout.assert_called_once_with()
        self.assertIsNone(client.credentials.access_token)
        self.assertIsNone(client.credentials.refresh_token)
        self.assertEqual(client.credentials.anonymous_token, "anon")
        self.assertIn(("error", "Session expired. Please sign in again."), self.notifications)
        self.assertFalse(client.coordinator.state.is_refreshing)

    async def test_missing_refresh_token_expires_session_without_calling_backend(self):
        async def handler(request):
            return httpx.Response(401)

        client = self.make_client(handler, credentials={"access_token": "old"})
        with self.assertRaises(SessionExpiredError):
            await client.dispatcher.request("GET", "/sessions/")
        self.assertNotIn("/api/auth/refresh/", self.paths())
        self.logout.assert_called_once_with()

    async def test_refresh_response_without_access_token_expires_session(self):
        async def handler(request):
            if request.url.path == "/api/auth/refresh/":
                return httpx.Response(200, json={"unexpected": True})
            return httpx.Response(401)

        client = self.make_client(handler, credentials=dict(EXPIRED))
        with self.assertRaises(SessionExpiredError):
            await client.dispatcher.request("GET", "/sessions/")
        self.assertIsNone(client.credentials.access_token)


class TestRetryCeiling(BaseClientTest):
    async def test_fourth_failure_logs_out_without_refreshing(self):
        async def handler(request):
            if request.url.path == "/api/auth/refresh/":
                return httpx.Response(500)
            return httpx.Response(401)

        client = self.make_client(handler, credentials=dict(EXPIRED), max_retry_attempts=3)

        for attempt in range(3):
            with self.subTest(attempt=attempt):
                client.credentials.set("refresh_token", "r")
                with self.assertRaises(SessionExpiredError):
                    await client.dispatcher.request("GET", "/sessions/")
                self.assertEqual(client.coordinator.state.failed_request_count, attempt + 1)

        client.credentials.set("refresh_token", "r")
        with self.assertRaises(AuthExhaustedError):
            await client.dispatcher.request("GET", "/sessions/")

        self.assertEqual(client.coordinator.refresh_calls, 3)
        self.assertEqual(self.paths().count("/api/auth/refresh/"), 3)
        self.assertTrue(client.coordinator.retry_ceiling_reached)
        self.assertEqual(self.logout.call_count, 4)
        self.assertIsNone(client.credentials.refresh_token)

    async def test_successful_response_resets_failure_counter(self):
        async def handler(request):
            if request.url.path == "/api/missing/":
                return httpx.Response(404)
            return httpx.Response(200, json={})

        client = self.make_client(handler)
        client.coordinator.state.failed_request_count = 2

        await client.dispatcher.request("GET", "/missing/")
        self.assertEqual(client.coordinator.state.failed_request_count, 2)

        await client.dispatcher.request("GET", "/sessions/")
        self.assertEqual(client.coordinator.state.failed_request_count, 0)


class TestWaiterTimeout(BaseClientTest):
    async def test_waiter_gives_up_after_wait_timeout(self):
        refresh_started = asyncio.Event()
        release_refresh = asyncio.Event()

        async def handler(request):
            if request.url.path == "/api/auth/refresh/":
                refresh_started.set()
                await release_refresh.wait()
                return httpx.Response(200, json={"access": "new"})
            if request.headers.get("Authorization") == "Bearer new":
                return httpx.Response(200, json=[])
            return httpx.Response(401)

        client = self.make_client(handler, credentials=dict(EXPIRED), refresh_wait_timeout_seconds=0.05)

        first = asyncio.create_task(client.dispatcher.request("GET", "/sessions/"))
        await asyncio.wait_for(refresh_started.wait(), timeout=1)

        with self.assertRaises(RefreshTimeoutError):
            await client.dispatcher.request("GET", "/sessions/")
        self.assertEqual(len(client.coordinator.state.waiters), 0)

        release_refresh.set()
        response = await asyncio.wait_for(first, timeout=1)
        self.assertEqual(response.status_code, 200)
        self.logout.assert_not_called()


class TestPeriodicReset(BaseClientTest):
    async def test_counter_is_forgiven_every_interval(self):
        http_client = httpx.AsyncClient(base_url="http://testserver/api")
        self.addAsyncCleanup(http_client.aclose)
        coordinator = RefreshCoordinator(http_client, CredentialStore(), reset_interval=0.05)
        self.addAsyncCleanup(coordinator.aclose)

        coordinator.state.failed_request_count = 2
        coordinator.start()
        coordinator.start()  # idempotent
        await asyncio.sleep(0.15)

        self.assertEqual(coordinator.state.failed_request_count, 0)

    async def test_aclose_stops_the_reset_task(self):
        http_client = httpx.AsyncClient(base_url="http://testserver/api")
        self.addAsyncCleanup(http_client.aclose)
        coordinator = RefreshCoordinator(http_client, CredentialStore(), reset_interval=0.05)

        coordinator.start()
        await coordinator.aclose()
        coordinator.state.failed_request_count = 2
        await asyncio.sleep(0.1)

        self.assertEqual(coordinator.state.failed_request_count, 2)
