import asyncio
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Set

import httpx

from .auth import RefreshCoordinator
from .cancellation import CancellationToken
from . import config as config_module
from .config import debug_print, get_config
from .credentials import CredentialStore
from .dispatcher import RequestDispatcher
from .errors import AuthError, InvalidRegenerationTarget, SessionBusyError, StreamFailedError
from .models import Message, MessageStatus, Mode, Participant, Role, Session
from .reconciler import Notifier, StreamReconciler, default_notifier
from .regeneration import RegenerationController
from .store import SessionStore
from .streaming import STREAM_PATH, run_stream


class ChatClient:
    """
    Session engine facade: session commands, streaming sends and regeneration.

    All network calls go through one `RequestDispatcher`, so every command
    shares the same credential handling and singleflight refresh.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials: Optional[CredentialStore] = None,
        store: Optional[SessionStore] = None,
        on_notify: Optional[Notifier] = None,
        on_logout: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = config if config is not None else get_config()
        config_module.DEBUG = bool(self.config.get("debug", config_module.DEBUG))
        self._client = httpx.AsyncClient(
            base_url=self.config["api_base_url"],
            transport=transport,
            timeout=self.config["request_timeout_seconds"],
            headers={"Content-Type": "application/json"},
        )
        self.credentials = credentials if credentials is not None else CredentialStore(self.config.get("credentials_file"))
        self.store = store if store is not None else SessionStore()
        self._notify = on_notify or default_notifier
        self._on_logout = on_logout

        self.coordinator = RefreshCoordinator(
            self._client,
            self.credentials,
            on_logout=self._handle_logout,
            refresh_timeout=self.config["refresh_timeout_seconds"],
            wait_timeout=self.config["refresh_wait_timeout_seconds"],
            max_retry_attempts=self.config["max_retry_attempts"],
            reset_interval=self.config["failure_reset_interval_seconds"],
        )
        self.dispatcher = RequestDispatcher(self._client, self.credentials, self.coordinator)
        self.regeneration = RegenerationController(
            self.store,
            self.dispatcher,
            on_notify=self._notify,
            request_timeout=self.config["request_timeout_seconds"],
        )
        self._pending_streams: Dict[str, CancellationToken] = {}
        self._background: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "ChatClient":
        self.coordinator.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    async def aclose(self) -> None:
        for token in list(self._pending_streams.values()):
            token.cancel("client closed")
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.coordinator.aclose()
        await self._client.aclose()

    def _handle_logout(self) -> None:
        debug_print("🚪 Logging out")
        self._notify("error", "Session expired. Please sign in again.")
        if self._on_logout is not None:
            self._on_logout()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _ensure_idle(self, session_id: str) -> None:
        if self.store.is_regenerating(session_id):
            raise SessionBusyError(f"A regeneration is running for session {session_id}")
        if session_id in self._pending_streams:
            raise SessionBusyError(f"A stream is already running for session {session_id}")

    async def _request_json(self, method: str, url: str, **kwargs):
        self.coordinator.start()
        response = await self.dispatcher.request(method, url, **kwargs)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    # --- Sessions ---

    async def create_session(
        self,
        mode: Mode = Mode.DIRECT,
        model_a: Optional[str] = None,
        model_b: Optional[str] = None,
    ) -> Session:
        data = await self._request_json(
            "POST",
            "/sessions/",
            json={"mode": Mode(mode).value, "model_a_id": model_a, "model_b_id": model_b},
        )
        session = Session.from_api(data)
        self.store.add_session(session)
        return session

    async def fetch_sessions(self) -> List[Session]:
        data = await self._request_json("GET", "/sessions/")
        if isinstance(data, dict):
            data = data.get("results") or []
        sessions = [Session.from_api(item) for item in data or [] if isinstance(item, dict)]
        self.store.set_sessions(sessions)
        return sessions

    async def fetch_session(self, session_id: str) -> Session:
        data = await self._request_json("GET", f"/sessions/{session_id}/")
        session = Session.from_api(data)
        messages = [Message.from_api(m) for m in data.get("messages") or [] if isinstance(m, dict)]
        self.store.set_session_state(session_id, messages, session_data=session)
        return session

    async def rename_session(self, session_id: str, title: str) -> Session:
        await self._request_json("PATCH", f"/sessions/{session_id}/", json={"title": title})
        return self.store.update_session_title(session_id, title)

    async def delete_session(self, session_id: str) -> None:
        self.abandon(session_id)
        await self._request_json("DELETE", f"/sessions/{session_id}/")
        self.store.remove_session(session_id)

    async def generate_title(self, session_id: str) -> Optional[str]:
        """Ask the backend to title a session; failures are logged, never raised."""
        try:
            data = await self._request_json("POST", f"/sessions/{session_id}/generate_title/")
        except (httpx.HTTPError, AuthError, ValueError) as e:
            debug_print(f"⚠️  Failed to generate title: {e}")
            return None
        title = data.get("title") if isinstance(data, dict) else None
        if title and self.store.find_session(session_id) is not None:
            self.store.update_session_title(session_id, title)
        return title

    # --- Messages ---

    def _placeholders(self, session: Session, user_message: Message) -> List[Message]:
        placeholders = []
        for participant in session.participants:
            placeholders.append(
                Message(
                    id=str(uuid.uuid4()),
                    role=Role.ASSISTANT,
                    participant=participant,
                    parent_message_ids=(user_message.id,),
                    status=MessageStatus.PENDING,
                    model_id=session.model_a if participant == Participant.A else session.model_b,
                )
            )
        return placeholders

    async def send_message(
        self,
        session_id: str,
        content: str,
        parent_message_ids: Iterable[str] = (),
        cancellation: Optional[CancellationToken] = None,
    ) -> Dict[Participant, Message]:
        """Send one user turn and stream the reply of every participant of the session."""
        session = self.store.get_session(session_id)
        self._ensure_idle(session_id)
        self.coordinator.start()

        parent_message_ids = tuple(parent_message_ids)
        user_message = Message(
            id=str(uuid.uuid4()),
            role=Role.USER,
            content=content,
            parent_message_ids=parent_message_ids,
        )
        placeholders = self._placeholders(session, user_message)

        self.store.add_message(session_id, user_message)
        for placeholder in placeholders:
            self.store.begin_streaming(
                session_id,
                placeholder.id,
                placeholder.participant,
                parent_message_ids=placeholder.parent_message_ids,
                model_id=placeholder.model_id,
            )

        reconciler = StreamReconciler(
            self.store,
            session_id,
            {p.participant: p.id for p in placeholders},
            on_notify=self._notify,
        )
        token = cancellation or CancellationToken()
        self._pending_streams[session_id] = token
        # Sent as pending, stored as complete.
        outgoing = dict(user_message.to_api(), status=MessageStatus.PENDING.value)
        body = {
            "session_id": session_id,
            "messages": [outgoing] + [p.to_api() for p in placeholders],
        }
        try:
            await run_stream(
                self.dispatcher,
                "POST",
                STREAM_PATH,
                reconciler,
                json=body,
                cancellation=token,
                timeout=self.config["request_timeout_seconds"],
            )
        except StreamFailedError:
            if session.mode == Mode.DIRECT:
                self._notify("error", "Failed to send message")
            else:
                self._notify("error", "Failed to send message to both models")
            raise
        finally:
            if self._pending_streams.get(session_id) is token:
                del self._pending_streams[session_id]

        if not parent_message_ids and self.config.get("auto_generate_title"):
            self._spawn(self.generate_title(session_id))
        return dict(reconciler.finalized)

    async def regenerate(
        self,
        session_id: str,
        message_id: str,
        cancellation: Optional[CancellationToken] = None,
    ) -> Message:
        message = self.store.get_message(session_id, message_id)
        if message is None:
            raise InvalidRegenerationTarget(f"No finalized message {message_id} in session {session_id}")
        self._ensure_idle(session_id)
        self.coordinator.start()

        token = cancellation or CancellationToken()
        self._pending_streams[session_id] = token
        try:
            return await self.regeneration.regenerate(session_id, message, cancellation=token)
        finally:
            if self._pending_streams.get(session_id) is token:
                del self._pending_streams[session_id]

    async def submit_feedback(self, session_id: str, message_id: str, preference: str) -> Message:
        await self._request_json(
            "POST",
            "/feedback/",
            json={
                "session_id": session_id,
                "feedback_type": "preference",
                "message_id": message_id,
                "preference": preference,
            },
        )
        return self.store.set_feedback(session_id, message_id, preference)

    def abandon(self, session_id: str) -> bool:
        """Cancel the pending stream of a session, if any."""
        token = self._pending_streams.pop(session_id, None)
        if token is None:
            return False
        token.cancel(f"stream for session {session_id} abandoned")
        return True
