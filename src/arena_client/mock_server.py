"""
Local stand-in for the chat comparison backend.

Speaks the same line protocol and auth endpoints as the real service so the
client can be exercised end to end without network access. Replies are
deterministic echoes of the prompt.
"""

import json
import secrets
import time
import uuid
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from starlette.responses import StreamingResponse

from .config import debug_print
from .frames import escape_chunk

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


class MockBackend:
    def __init__(self, *, words_per_chunk: int = 1) -> None:
        self.words_per_chunk = max(1, int(words_per_chunk))
        self.access_tokens: Set[str] = set()
        self.refresh_tokens: Set[str] = set()
        self.anonymous_tokens: Set[str] = set()
        self.sessions: Dict[str, dict] = {}
        self.messages: Dict[str, dict] = {}
        self.feedback: List[dict] = []
        # Participants whose next generation ends with finishReason=error.
        self.failing_participants: Set[str] = set()
        self.refresh_calls = 0
        self.stream_calls = 0

    # --- Auth ---

    def issue_tokens(self) -> Tuple[str, str]:
        access = f"access-{secrets.token_hex(8)}"
        refresh = f"refresh-{secrets.token_hex(8)}"
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return access, refresh

    def expire_access_tokens(self) -> None:
        self.access_tokens.clear()

    def is_authorized(self, request: Request) -> bool:
        auth = request.headers.get("authorization") or ""
        if auth.startswith("Bearer ") and auth[len("Bearer "):] in self.access_tokens:
            return True
        anonymous = request.headers.get("x-anonymous-token")
        return bool(anonymous) and anonymous in self.anonymous_tokens

    def require_auth(self, request: Request) -> None:
        if not self.is_authorized(request):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    # --- Generation ---

    def reply_text(self, model_id: Optional[str], prompt: str) -> str:
        return f"[{model_id or 'model'}] {prompt}"

    def _chunks(self, text: str) -> List[str]:
        words = text.split(" ")
        chunks = []
        for i in range(0, len(words), self.words_per_chunk):
            piece = " ".join(words[i : i + self.words_per_chunk])
            chunks.append(piece if i + self.words_per_chunk >= len(words) else piece + " ")
        return chunks

    def render_lines(self, participant: str, text: str) -> List[str]:
        lines = [f'{participant}0:"{escape_chunk(chunk)}"' for chunk in self._chunks(text)]
        if participant in self.failing_participants:
            self.failing_participants.discard(participant)
            done = {"finishReason": "error", "error": "generation failed"}
        else:
            done = {"finishReason": "stop"}
        lines.append(f"{participant}d:{json.dumps(done)}")
        return lines

    @staticmethod
    def interleave(per_participant: List[List[str]]) -> List[str]:
        lines: List[str] = []
        longest = max((len(p) for p in per_participant), default=0)
        for i in range(longest):
            for participant_lines in per_participant:
                if i < len(participant_lines):
                    lines.append(participant_lines[i])
        return lines


async def _iter_lines(lines: List[str]) -> AsyncIterator[str]:
    for line in lines:
        yield line + "\n"


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {str(e)}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return body


def build_router(backend: MockBackend) -> APIRouter:
    router = APIRouter()

    def _session_or_404(session_id: str) -> dict:
        session = backend.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    # --- Auth ---

    @router.post("/auth/refresh/")
    async def refresh(request: Request):
        backend.refresh_calls += 1
        body = await _read_json(request)
        refresh_token = body.get("refresh")
        if not refresh_token or refresh_token not in backend.refresh_tokens:
            raise HTTPException(status_code=401, detail="Token is invalid or expired")
        access = f"access-{secrets.token_hex(8)}"
        backend.access_tokens.add(access)
        debug_print(f"🔑 Issued refreshed access token {access[:14]}...")
        return {"access": access}

    @router.post("/auth/anonymous/")
    async def anonymous_login():
        token = f"anon-{secrets.token_hex(8)}"
        backend.anonymous_tokens.add(token)
        return {"anonymous_token": token}

    # --- Sessions ---

    @router.post("/sessions/", status_code=201)
    async def create_session(request: Request):
        backend.require_auth(request)
        body = await _read_json(request)
        session = {
            "id": str(uuid.uuid4()),
            "mode": body.get("mode") or "direct",
            "model_a_id": body.get("model_a_id"),
            "model_b_id": body.get("model_b_id"),
            "title": "",
            "created_at": int(time.time()),
        }
        backend.sessions[session["id"]] = session
        return session

    @router.get("/sessions/")
    async def list_sessions(request: Request):
        backend.require_auth(request)
        return sorted(backend.sessions.values(), key=lambda s: s["created_at"], reverse=True)

    @router.get("/sessions/{session_id}/")
    async def get_session(session_id: str, request: Request):
        backend.require_auth(request)
        session = dict(_session_or_404(session_id))
        session["messages"] = [m for m in backend.messages.values() if m.get("session_id") == session_id]
        return session

    @router.patch("/sessions/{session_id}/")
    async def update_session(session_id: str, request: Request):
        backend.require_auth(request)
        session = _session_or_404(session_id)
        body = await _read_json(request)
        if "title" in body:
            session["title"] = str(body.get("title") or "")
        return session

    @router.delete("/sessions/{session_id}/", status_code=204)
    async def delete_session(session_id: str, request: Request):
        backend.require_auth(request)
        _session_or_404(session_id)
        del backend.sessions[session_id]
        for message_id in [k for k, m in backend.messages.items() if m.get("session_id") == session_id]:
            del backend.messages[message_id]
        return Response(status_code=204)

    @router.post("/sessions/{session_id}/generate_title/")
    async def generate_title(session_id: str, request: Request):
        backend.require_auth(request)
        session = _session_or_404(session_id)
        first_user = next(
            (m for m in backend.messages.values() if m.get("session_id") == session_id and m.get("role") == "user"),
            None,
        )
        title = (first_user or {}).get("content") or "New chat"
        session["title"] = title[:40]
        return {"title": session["title"]}

    # --- Messages ---

    @router.post("/messages/stream")
    async def stream_messages(request: Request):
        backend.require_auth(request)
        backend.stream_calls += 1
        body = await _read_json(request)
        session = _session_or_404(str(body.get("session_id") or ""))
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise HTTPException(status_code=400, detail="'messages' must be a non-empty array.")

        user = next((m for m in messages if isinstance(m, dict) and m.get("role") == "user"), None)
        if user is None:
            raise HTTPException(status_code=400, detail="Missing user message.")
        backend.messages[user["id"]] = dict(user, session_id=session["id"])

        per_participant = []
        for placeholder in messages:
            if not isinstance(placeholder, dict) or placeholder.get("role") != "assistant":
                continue
            participant = placeholder.get("participant") or "a"
            text = backend.reply_text(placeholder.get("modelId"), str(user.get("content") or ""))
            backend.messages[placeholder["id"]] = dict(
                placeholder, session_id=session["id"], participant=participant, content=text, status="complete"
            )
            per_participant.append(backend.render_lines(participant, text))

        return StreamingResponse(_iter_lines(backend.interleave(per_participant)), media_type=STREAM_MEDIA_TYPE)

    @router.post("/messages/{message_id}/regenerate/")
    async def regenerate_message(message_id: str, request: Request):
        backend.require_auth(request)
        message = backend.messages.get(message_id)
        if message is None or message.get("role") != "assistant":
            raise HTTPException(status_code=404, detail="Message not found")
        parent = backend.messages.get((message.get("parent_message_ids") or [None])[0]) or {}
        text = "(regenerated) " + backend.reply_text(message.get("modelId"), str(parent.get("content") or ""))
        message["content"] = text
        lines = backend.render_lines(message.get("participant") or "a", text)
        return StreamingResponse(_iter_lines(lines), media_type=STREAM_MEDIA_TYPE)

    @router.post("/feedback/")
    async def submit_feedback(request: Request):
        backend.require_auth(request)
        body = await _read_json(request)
        backend.feedback.append(body)
        message = backend.messages.get(str(body.get("message_id") or ""))
        if message is not None:
            message["feedback"] = body.get("preference")
        return {"status": "ok"}

    return router


def create_app(backend: Optional[MockBackend] = None) -> FastAPI:
    backend = backend or MockBackend()
    app = FastAPI(title="Arena development backend")
    app.state.backend = backend
    app.include_router(build_router(backend), prefix="/api")
    return app
