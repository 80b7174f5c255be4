import asyncio
import unittest

from tests._stream_test_utils import aiter_chunks, config_module

from arena_client.frames import Completion, ContentChunk, FinishReason
from arena_client.models import MessageStatus, Participant, Role
from arena_client.reconciler import StreamReconciler
from arena_client.store import SessionStore


class ReconcilerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._orig_debug = config_module.DEBUG
        config_module.DEBUG = False
        self.addCleanup(setattr, config_module, "DEBUG", self._orig_debug)
        self.store = SessionStore()
        self.notifications = []

    def reconciler(self, targets, **kwargs) -> StreamReconciler:
        for participant, message_id in targets.items():
            self.store.begin_streaming("s1", message_id, participant)
        return StreamReconciler(
            self.store,
            "s1",
            targets,
            on_notify=lambda level, message: self.notifications.append((level, message)),
            **kwargs,
        )


class TestStreamReconciler(ReconcilerTestCase):
    async def test_compare_stream_interleaves_into_two_messages(self):
        rec = self.reconciler({Participant.A: "ma", Participant.B: "mb"})
        chunks = [
            'a0:"Hi"\nb0:"Yo"\n',
            'a0:" there"\nad:{"finishReason":"stop"}\n',
            'b0:"!"\nbd:{"finishReason":"stop"}\n',
        ]

        settled = await rec.consume(aiter_chunks(chunks))

        self.assertTrue(settled)
        self.assertEqual(self.store.get_message("s1", "ma").content, "Hi there")
        self.assertEqual(self.store.get_message("s1", "mb").content, "Yo!")
        self.assertEqual(self.store.get_message("s1", "ma").participant, Participant.A)
        self.assertEqual(self.store.get_message("s1", "mb").participant, Participant.B)
        self.assertEqual(self.store.streaming_buffers("s1"), {})
        self.assertEqual(self.notifications, [])

    async def test_escapes_are_decoded_into_content(self):
        rec = self.reconciler({Participant.A: "ma"})
        chunks = ['a0:"Line1\\nLine2"\n', 'a0:" C:\\\\path"\n', 'ad:{"finishReason":"stop"}\n']
        await rec.consume(aiter_chunks(chunks))
        self.assertEqual(self.store.get_message("s1", "ma").content, "Line1\nLine2 C:\\path")

    async def test_one_channel_finishing_leaves_the_other_streaming(self):
        rec = self.reconciler({Participant.A: "ma", Participant.B: "mb"})
        rec.apply(ContentChunk(Participant.A, "done"))
        rec.apply(Completion(Participant.A))
        rec.apply(ContentChunk(Participant.B, "still"))

        self.assertFalse(rec.settled)
        self.assertEqual(list(rec.pending_message_ids), ["mb"])
        self.assertEqual(self.store.get_message("s1", "ma").content, "done")
        self.assertIsNone(self.store.get_message("s1", "mb"))
        self.assertEqual(self.store.get_buffer("s1", "mb").content, "still")

    def test_error_completion_keeps_partial_content_and_notifies(self):
        rec = self.reconciler({Participant.A: "ma", Participant.B: "mb"})
        rec.apply(ContentChunk(Participant.B, "partial"))
        rec.apply(Completion(Participant.B, FinishReason.ERROR, "model overloaded"))

        message = self.store.get_message("s1", "mb")
        self.assertEqual(message.content, "partial")
        self.assertEqual(message.status, MessageStatus.ERROR)
        self.assertEqual(rec.channels[Participant.B].error, "model overloaded")
        self.assertEqual(self.notifications, [("error", "Model B error: model overloaded")])
        self.assertFalse(rec.settled)

    def test_frames_after_completion_are_dropped(self):
        rec = self.reconciler({Participant.A: "ma"})
        rec.apply(ContentChunk(Participant.A, "once"))
        rec.apply(Completion(Participant.A))
        rec.apply(ContentChunk(Participant.A, " more"))
        rec.apply(Completion(Participant.A))
        self.assertEqual(self.store.get_message("s1", "ma").content, "once")
        self.assertEqual(len(self.store.messages("s1")), 1)

    def test_frames_for_unexpected_participant_are_dropped(self):
        rec = self.reconciler({Participant.A: "ma"})
        rec.apply(ContentChunk(Participant.B, "stray"))
        rec.apply(Completion(Participant.B))
        self.assertEqual(self.store.messages("s1"), ())
        self.assertEqual(self.store.get_buffer("s1", "ma").content, "")

    def test_single_channel_folds_every_tag_onto_one_message(self):
        rec = self.reconciler({Participant.B: "mb"}, single_channel=Participant.B)
        rec.apply(ContentChunk(Participant.A, "from "))
        rec.apply(ContentChunk(Participant.B, "either"))
        rec.apply(Completion(Participant.A))
        message = self.store.get_message("s1", "mb")
        self.assertEqual(message.content, "from either")
        self.assertEqual(message.role, Role.ASSISTANT)
        self.assertEqual(message.participant, Participant.B)

    def test_missing_buffer_is_created_on_first_frame(self):
        rec = StreamReconciler(self.store, "s1", {Participant.A: "late"}, on_notify=lambda *_: None)
        rec.apply(ContentChunk(Participant.A, "x"))
        self.assertEqual(self.store.get_buffer("s1", "late").content, "x")

    async def test_consume_stops_reading_once_settled(self):
        rec = self.reconciler({Participant.A: "ma"})
        never = asyncio.Event()
        read_after_settle = []

        async def lingering():
            yield 'a0:"x"\nad:{"finishReason":"stop"}\n'
            read_after_settle.append(True)
            await never.wait()
            yield 'a0:"late"\n'

        settled = await asyncio.wait_for(rec.consume(lingering()), timeout=1)
        self.assertTrue(settled)
        self.assertEqual(read_after_settle, [])
        self.assertEqual(self.store.get_message("s1", "ma").content, "x")

    async def test_consume_reports_unsettled_stream_and_discard_pending(self):
        rec = self.reconciler({Participant.A: "ma", Participant.B: "mb"})
        settled = await rec.consume(aiter_chunks(['a0:"x"\nad:{"finishReason":"stop"}\nb0:"half"\n']))
        self.assertFalse(settled)

        rec.discard_pending()

        self.assertEqual(self.store.streaming_buffers("s1"), {})
        self.assertEqual([m.id for m in self.store.messages("s1")], ["ma"])

    def test_requires_a_target(self):
        with self.assertRaises(ValueError):
            StreamReconciler(self.store, "s1", {})


if __name__ == "__main__":
    unittest.main()
