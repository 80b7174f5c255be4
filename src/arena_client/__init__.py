from .client import ChatClient
from .frames import Completion, ContentChunk, FinishReason, FrameDecoder, aiter_frames, parse_frame, unescape_chunk
from .models import Message, MessageStatus, Mode, Participant, Role, Session, StreamingBuffer
from .store import SessionStore

__version__ = "0.1.0"

__all__ = [
    "ChatClient",
    "Completion",
    "ContentChunk",
    "FinishReason",
    "FrameDecoder",
    "Message",
    "MessageStatus",
    "Mode",
    "Participant",
    "Role",
    "Session",
    "SessionStore",
    "StreamingBuffer",
    "aiter_frames",
    "parse_frame",
    "unescape_chunk",
]
