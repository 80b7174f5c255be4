from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import debug_print
from .errors import DuplicateMessageError, UnknownMessageError, UnknownSessionError
from .models import Message, MessageStatus, Participant, Role, Session, StreamingBuffer


class SessionStore:
    """
    In-memory sessions, finalized messages and transient streaming buffers.

    Every mutation goes through one of the methods below; other components only
    read. Finalized messages are kept per session in arrival order, streaming
    buffers per ``(session_id, message_id)``.
    """

    def __init__(self) -> None:
        self._sessions: List[Session] = []
        self._active_session_id: Optional[str] = None
        self._messages: Dict[str, List[Message]] = {}
        self._streaming: Dict[str, Dict[str, StreamingBuffer]] = {}
        self._regenerating: Set[str] = set()

    # --- Sessions ---

    @property
    def sessions(self) -> Tuple[Session, ...]:
        return tuple(self._sessions)

    @property
    def active_session(self) -> Optional[Session]:
        if self._active_session_id is None:
            return None
        return self.find_session(self._active_session_id)

    def find_session(self, session_id: str) -> Optional[Session]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def get_session(self, session_id: str) -> Session:
        session = self.find_session(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def add_session(self, session: Session, activate: bool = True) -> Session:
        self._sessions = [s for s in self._sessions if s.id != session.id]
        self._sessions.insert(0, session)
        if activate:
            self._active_session_id = session.id
        return session

    def set_sessions(self, sessions: Iterable[Session]) -> None:
        self._sessions = list(sessions)
        if self._active_session_id is not None and self.find_session(self._active_session_id) is None:
            self._active_session_id = None

    def set_active_session(self, session_id: Optional[str]) -> None:
        if session_id is not None:
            self.get_session(session_id)
        self._active_session_id = session_id

    def update_session_title(self, session_id: str, title: str) -> Session:
        session = self.get_session(session_id)
        session.title = str(title or "")
        return session

    def remove_session(self, session_id: str) -> None:
        self._sessions = [s for s in self._sessions if s.id != session_id]
        self._messages.pop(session_id, None)
        self._streaming.pop(session_id, None)
        self._regenerating.discard(session_id)
        if self._active_session_id == session_id:
            self._active_session_id = None

    def set_session_state(
        self,
        session_id: str,
        messages: Iterable[Message],
        session_data: Optional[Session] = None,
    ) -> None:
        """Replace a session's finalized messages with what the backend returned."""
        self._messages[session_id] = list(messages)
        if session_data is not None:
            if self.find_session(session_id) is None:
                self._sessions.insert(0, session_data)
            else:
                self._sessions = [session_data if s.id == session_id else s for s in self._sessions]

    def clear_messages(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            self._messages.clear()
            self._streaming.clear()
        else:
            self._messages.pop(session_id, None)
            self._streaming.pop(session_id, None)

    # --- Finalized messages ---

    def messages(self, session_id: str) -> Tuple[Message, ...]:
        return tuple(self._messages.get(session_id, ()))

    def get_message(self, session_id: str, message_id: str) -> Optional[Message]:
        for message in self._messages.get(session_id, ()):
            if message.id == message_id:
                return message
        return None

    def _index_of(self, session_id: str, message_id: str) -> int:
        for index, message in enumerate(self._messages.get(session_id, ())):
            if message.id == message_id:
                return index
        raise UnknownMessageError(session_id, message_id)

    def _ensure_unique(self, session_id: str, message_id: str) -> None:
        if self.get_message(session_id, message_id) is not None:
            raise DuplicateMessageError(session_id, message_id)
        if message_id in self._streaming.get(session_id, {}):
            raise DuplicateMessageError(session_id, message_id)

    def add_message(self, session_id: str, message: Message) -> Message:
        self._ensure_unique(session_id, message.id)
        self._messages.setdefault(session_id, []).append(message)
        return message

    def remove_message(self, session_id: str, message_id: str) -> int:
        """Delete a finalized message and return the index it occupied."""
        index = self._index_of(session_id, message_id)
        del self._messages[session_id][index]
        return index

    def set_feedback(self, session_id: str, message_id: str, value: Optional[str]) -> Message:
        index = self._index_of(session_id, message_id)
        message = self._messages[session_id][index].with_feedback(value)
        self._messages[session_id][index] = message
        return message

    # --- Streaming buffers ---

    def streaming_buffers(self, session_id: str) -> Dict[str, StreamingBuffer]:
        return dict(self._streaming.get(session_id, {}))

    def get_buffer(self, session_id: str, message_id: str) -> Optional[StreamingBuffer]:
        return self._streaming.get(session_id, {}).get(message_id)

    def begin_streaming(
        self,
        session_id: str,
        message_id: str,
        participant: Optional[Participant] = Participant.A,
        parent_message_ids: Iterable[str] = (),
        model_id: Optional[str] = None,
        position: Optional[int] = None,
    ) -> StreamingBuffer:
        self._ensure_unique(session_id, message_id)
        buffer = StreamingBuffer(
            session_id=session_id,
            message_id=message_id,
            participant=participant,
            parent_message_ids=tuple(parent_message_ids),
            model_id=model_id,
            position=position,
        )
        self._streaming.setdefault(session_id, {})[message_id] = buffer
        return buffer

    def append_chunk(self, session_id: str, message_id: str, text: str) -> StreamingBuffer:
        buffer = self.get_buffer(session_id, message_id)
        if buffer is None:
            raise UnknownMessageError(session_id, message_id)
        buffer.content += text
        return buffer

    def finalize(
        self,
        session_id: str,
        message_id: str,
        status: MessageStatus = MessageStatus.COMPLETE,
    ) -> Message:
        """Turn a streaming buffer into a permanent assistant message."""
        buffers = self._streaming.get(session_id, {})
        buffer = buffers.pop(message_id, None)
        if buffer is None:
            raise UnknownMessageError(session_id, message_id)
        buffer.is_complete = True
        if not buffers:
            self._streaming.pop(session_id, None)

        message = Message(
            id=message_id,
            role=Role.ASSISTANT,
            content=buffer.content,
            participant=buffer.participant,
            parent_message_ids=buffer.parent_message_ids,
            status=status,
            model_id=buffer.model_id,
        )
        messages = self._messages.setdefault(session_id, [])
        if buffer.position is not None and 0 <= buffer.position <= len(messages):
            messages.insert(buffer.position, message)
        else:
            messages.append(message)
        label = buffer.participant.value if buffer.participant else "-"
        debug_print(f"📝 Finalized {message_id} ({label}, {len(message.content)} chars)")
        return message

    def discard_streaming(self, session_id: str, message_id: str) -> Optional[StreamingBuffer]:
        buffers = self._streaming.get(session_id, {})
        buffer = buffers.pop(message_id, None)
        if not buffers:
            self._streaming.pop(session_id, None)
        return buffer

    # --- Regeneration flag ---

    def is_regenerating(self, session_id: str) -> bool:
        return session_id in self._regenerating

    def set_regenerating(self, session_id: str, value: bool) -> None:
        if value:
            self._regenerating.add(session_id)
        else:
            self._regenerating.discard(session_id)
