from typing import Optional

from .cancellation import CancellationToken
from .config import debug_print
from .dispatcher import RequestDispatcher
from .errors import InvalidRegenerationTarget, RegenerationFailedError, SessionBusyError, StreamFailedError
from .models import Message, Participant, Role
from .reconciler import Notifier, StreamReconciler, default_notifier
from .store import SessionStore
from .streaming import regenerate_path, run_stream


class RegenerationController:
    """Discards one finalized assistant message and streams a replacement under the same id."""

    def __init__(
        self,
        store: SessionStore,
        dispatcher: RequestDispatcher,
        *,
        on_notify: Optional[Notifier] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self._notify = on_notify or default_notifier
        self.request_timeout = request_timeout

    async def regenerate(
        self,
        session_id: str,
        message: Message,
        cancellation: Optional[CancellationToken] = None,
    ) -> Message:
        if not message.id or message.role != Role.ASSISTANT:
            raise InvalidRegenerationTarget("Invalid message for regeneration")
        if self.store.is_regenerating(session_id):
            raise SessionBusyError(f"A regeneration is already running for session {session_id}")

        # Frames are routed on one channel; the stored participant stays as it was.
        routing = message.participant or Participant.A
        self.store.set_regenerating(session_id, True)
        try:
            # From here until finalize the message is absent from the session.
            position = self.store.remove_message(session_id, message.id)
            self.store.begin_streaming(
                session_id,
                message.id,
                message.participant,
                parent_message_ids=message.parent_message_ids,
                model_id=message.model_id,
                position=position,
            )
            debug_print(f"🔁 Regenerating {message.id} (channel {routing.value})")

            reconciler = StreamReconciler(
                self.store,
                session_id,
                {routing: message.id},
                single_channel=routing,
                on_notify=self._notify,
            )
            try:
                await run_stream(
                    self.dispatcher,
                    "POST",
                    regenerate_path(message.id),
                    reconciler,
                    cancellation=cancellation,
                    timeout=self.request_timeout,
                )
            except StreamFailedError as e:
                self._notify("error", f"Failed to regenerate response: {e}")
                raise RegenerationFailedError(str(e), status_code=e.status_code) from e
            return reconciler.finalized[routing]
        finally:
            self.store.set_regenerating(session_id, False)
