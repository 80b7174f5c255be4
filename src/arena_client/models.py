from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple


class Mode(str, enum.Enum):
    DIRECT = "direct"
    COMPARE = "compare"
    RANDOM = "random"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Participant(str, enum.Enum):
    A = "a"
    B = "b"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    ERROR = "error"


def _participant_or_none(value: Any) -> Optional[Participant]:
    if isinstance(value, Participant):
        return value
    try:
        return Participant(str(value))
    except ValueError:
        return None


@dataclass
class Session:
    id: str
    mode: Mode = Mode.DIRECT
    model_a: Optional[str] = None
    model_b: Optional[str] = None
    title: str = ""

    @property
    def participants(self) -> Tuple[Participant, ...]:
        if self.mode == Mode.DIRECT:
            return (Participant.A,)
        return (Participant.A, Participant.B)

    @classmethod
    def from_api(cls, data: dict) -> "Session":
        try:
            mode = Mode(str(data.get("mode") or Mode.DIRECT.value))
        except ValueError:
            mode = Mode.DIRECT
        return cls(
            id=str(data["id"]),
            mode=mode,
            model_a=data.get("model_a_id") or data.get("model_a"),
            model_b=data.get("model_b_id") or data.get("model_b"),
            title=str(data.get("title") or ""),
        )


@dataclass(frozen=True)
class Message:
    """A finalized chat message. Only ``feedback`` changes after creation."""

    id: str
    role: Role
    content: str = ""
    participant: Optional[Participant] = None
    parent_message_ids: Tuple[str, ...] = ()
    status: MessageStatus = MessageStatus.COMPLETE
    feedback: Optional[str] = None
    model_id: Optional[str] = None

    def with_feedback(self, feedback: Optional[str]) -> "Message":
        return replace(self, feedback=feedback)

    def to_api(self) -> dict:
        payload = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "parent_message_ids": list(self.parent_message_ids),
            "status": self.status.value,
        }
        if self.participant is not None:
            payload["participant"] = self.participant.value
        if self.model_id:
            payload["modelId"] = self.model_id
        return payload

    @classmethod
    def from_api(cls, data: dict) -> "Message":
        try:
            status = MessageStatus(str(data.get("status") or MessageStatus.COMPLETE.value))
        except ValueError:
            status = MessageStatus.COMPLETE
        return cls(
            id=str(data["id"]),
            role=Role(str(data.get("role") or Role.ASSISTANT.value)),
            content=str(data.get("content") or ""),
            participant=_participant_or_none(data.get("participant")),
            parent_message_ids=tuple(str(p) for p in data.get("parent_message_ids") or ()),
            status=status,
            feedback=data.get("feedback"),
            model_id=data.get("modelId") or data.get("model_id"),
        )


@dataclass
class StreamingBuffer:
    """Transient accumulator for one assistant message while it streams."""

    session_id: str
    message_id: str
    participant: Optional[Participant] = Participant.A
    content: str = ""
    is_complete: bool = False
    parent_message_ids: Tuple[str, ...] = ()
    model_id: Optional[str] = None
    # Index in the finalized list to reinsert at (set when regenerating).
    position: Optional[int] = None
