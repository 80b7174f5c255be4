from dataclasses import dataclass
from typing import AsyncIterable, Callable, Dict, Iterable, Optional

from .cancellation import CancellationToken
from .config import debug_print
from .frames import Completion, ContentChunk, FinishReason, Frame, aiter_frames
from .models import Message, MessageStatus, Participant
from .store import SessionStore

Notifier = Callable[[str, str], None]


def default_notifier(level: str, message: str) -> None:
    emoji = "❌" if level == "error" else "ℹ️"
    debug_print(f"{emoji} {message}")


@dataclass
class ChannelStatus:
    message_id: str
    complete: bool = False
    error: Optional[str] = None


class StreamReconciler:
    """
    Applies decoded frames of one turn to the store.

    `targets` maps each expected participant to the message id its output is
    streamed into. With `single_channel` set, every frame is folded onto that
    participant regardless of its tag (regeneration streams a single message).
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        targets: Dict[Participant, str],
        *,
        single_channel: Optional[Participant] = None,
        on_notify: Optional[Notifier] = None,
    ) -> None:
        if not targets:
            raise ValueError("At least one target channel is required")
        self.store = store
        self.session_id = session_id
        self.single_channel = single_channel
        self.channels: Dict[Participant, ChannelStatus] = {
            participant: ChannelStatus(message_id=message_id) for participant, message_id in targets.items()
        }
        self.finalized: Dict[Participant, Message] = {}
        self._notify = on_notify or default_notifier

    @property
    def settled(self) -> bool:
        return all(channel.complete for channel in self.channels.values())

    @property
    def pending_message_ids(self) -> Iterable[str]:
        return [c.message_id for c in self.channels.values() if not c.complete]

    def _channel_for(self, frame: Frame) -> Optional[ChannelStatus]:
        participant = self.single_channel or frame.participant
        channel = self.channels.get(participant)
        if channel is None:
            debug_print(f"⚠️  Dropping frame for unexpected participant {frame.participant.value}")
            return None
        if channel.complete:
            debug_print(f"⚠️  Dropping frame for already completed participant {participant.value}")
            return None
        return channel

    def _ensure_buffer(self, participant: Participant, message_id: str) -> None:
        if self.store.get_buffer(self.session_id, message_id) is None:
            self.store.begin_streaming(self.session_id, message_id, participant)

    def apply(self, frame: Frame) -> None:
        channel = self._channel_for(frame)
        if channel is None:
            return
        participant = self.single_channel or frame.participant
        self._ensure_buffer(participant, channel.message_id)

        if isinstance(frame, ContentChunk):
            self.store.append_chunk(self.session_id, channel.message_id, frame.text)
        elif isinstance(frame, Completion):
            channel.complete = True
            status = MessageStatus.COMPLETE
            if frame.reason == FinishReason.ERROR:
                channel.error = frame.error or "unknown error"
                status = MessageStatus.ERROR
                self._notify("error", f"Model {participant.value.upper()} error: {channel.error}")
            # Partial output of a failed channel is kept rather than discarded.
            self.finalized[participant] = self.store.finalize(self.session_id, channel.message_id, status=status)

    async def consume(
        self,
        chunks: AsyncIterable[str],
        cancellation: Optional[CancellationToken] = None,
    ) -> bool:
        """Feed a text stream through the decoder until every channel settles.

        Returns whether the turn settled; the transport may stay open after the
        last completion, so reading stops as soon as it does.
        """
        frames = aiter_frames(chunks, cancellation=cancellation)
        try:
            async for frame in frames:
                self.apply(frame)
                if self.settled:
                    return True
        finally:
            await frames.aclose()
        return self.settled

    def discard_pending(self) -> None:
        for message_id in self.pending_message_ids:
            self.store.discard_streaming(self.session_id, message_id)
