from __future__ import annotations

import asyncio
import json
from unittest import IsolatedAsyncioTestCase, mock

from .db import TRIVIA_KEY, InMemoryBlobStore
from .errors import Conflict, InvalidPayload, MissingSession, StorageUnavailable, Unauthorized
from .ledger import LedgerStore
from .models import PaymentSession, WebhookEvent
from .schemas import SubmissionForm, UploadedFile
from .submissions import SubmissionStore
from .trivia import TriviaBank
from .workflow import SubmissionWorkflow


def trivia_form(**overrides) -> SubmissionForm:
    payload = {
        "contest": "Trivia Contest",
        "name": "Alice",
        "triviaAnswers": [{"selected": "A"}],
        "timeTaken": 12.5,
    }
    payload.update(overrides)
    return SubmissionForm.model_validate(payload)


def file_form(**overrides) -> SubmissionForm:
    payload = {
        "contest": "Photo Contest",
        "name": "Bob Smith",
        "file": UploadedFile(filename="my cat.png", content=b"\x89PNG", content_type="image/png"),
    }
    payload.update(overrides)
    return SubmissionForm.model_validate(payload)


class SubmissionWorkflowTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryBlobStore()
        self.ledger = LedgerStore(self.store)
        self.submissions = SubmissionStore(self.store)
        self.workflow = SubmissionWorkflow(
            ledger=self.ledger,
            submissions=self.submissions,
            store=self.store,
            trivia=TriviaBank(self.store),
        )
        await self.ledger.record_payment(PaymentSession(id="sess_1", payment_status="paid"))

    async def _entries(self):
        return await self.ledger.list_all()

    async def test_trivia_submission_consumes_session(self):
        submission = await self.workflow.submit("sess_1", trivia_form())

        self.assertEqual(submission.user_name, "Alice")
        self.assertEqual(submission.time_taken, 12.5)
        [doc] = await self.submissions.list_all()
        self.assertEqual(doc["userName"], "Alice")
        self.assertEqual(doc["timeTaken"], 12.5)
        self.assertEqual(doc["sessionId"], "sess_1")
        [entry] = await self._entries()
        self.assertTrue(entry["used"])

    async def test_second_submit_is_a_conflict(self):
        await self.workflow.submit("sess_1", trivia_form())

        with self.assertRaises(Conflict):
            await self.workflow.submit("sess_1", trivia_form())

        self.assertEqual(len(await self.submissions.list_all()), 1)

    async def test_concurrent_submits_accept_only_one(self):
        results = await asyncio.gather(
            self.workflow.submit("sess_1", trivia_form()),
            self.workflow.submit("sess_1", trivia_form(name="Mallory")),
            return_exceptions=True,
        )

        self.assertEqual(sum(isinstance(r, Conflict) for r in results), 1)
        self.assertEqual(len(await self.submissions.list_all()), 1)

    async def test_unknown_session_is_unauthorized_and_writes_nothing(self):
        with self.assertRaises(Unauthorized):
            await self.workflow.submit("sess_404", trivia_form())

        self.assertEqual(await self.submissions.list_all(), [])

    async def test_unpaid_session_is_unauthorized(self):
        await self.ledger.record_payment(PaymentSession(id="sess_2", payment_status="unpaid"))

        with self.assertRaises(Unauthorized):
            await self.workflow.submit("sess_2", file_form())

        self.assertEqual(await self.submissions.list_all(), [])
        self.assertEqual(self.store.files, {})

    async def test_missing_session_id(self):
        for session_id in (None, "", "   "):
            with self.assertRaises(MissingSession):
                await self.workflow.submit(session_id, file_form())

        self.assertEqual(await self.submissions.list_all(), [])
        self.assertEqual(self.store.files, {})

    async def test_trivia_without_time_taken(self):
        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", trivia_form(timeTaken=None))

        self.assertEqual(await self.submissions.list_all(), [])
        self.assertFalse((await self._entries())[0].get("used"))

    async def test_trivia_with_unparseable_answers(self):
        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", trivia_form(triviaAnswers="[{selected: A"))

        self.assertEqual(await self.submissions.list_all(), [])

    async def test_trivia_answers_must_be_a_list(self):
        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", trivia_form(triviaAnswers='{"selected": "A"}'))

    async def test_trivia_without_name(self):
        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", trivia_form(name=""))

    async def test_trivia_rejects_bad_time_values(self):
        for value in ("abc", "-1", "nan", "inf"):
            with self.assertRaises(InvalidPayload):
                await self.workflow.submit("sess_1", trivia_form(timeTaken=value))

        self.assertEqual(await self.submissions.list_all(), [])

    async def test_trivia_accepts_form_encoded_values(self):
        form = trivia_form(triviaAnswers=json.dumps([{"selected": "B"}, {"selected": "C"}]), timeTaken="0")

        submission = await self.workflow.submit("sess_1", form)

        self.assertEqual(submission.time_taken, 0.0)
        self.assertEqual([a.selected for a in submission.trivia_answers], ["B", "C"])

    async def test_trivia_is_scored_against_answer_key(self):
        await self.store.save(
            TRIVIA_KEY,
            {
                "default": [
                    {"question": "1 + 1?", "options": ["1", "2"], "answer": "2"},
                    {"question": "Sky?", "options": ["blue", "green"], "answer": "blue"},
                ]
            },
        )
        form = trivia_form(triviaAnswers=[{"selected": "2"}, {"selected": "green"}])

        submission = await self.workflow.submit("sess_1", form)

        self.assertEqual(submission.score, 1)

    async def test_trivia_scoring_ignores_case_and_whitespace(self):
        await self.store.save(
            TRIVIA_KEY,
            [
                {"question": "Capital of France?", "options": ["Paris", "Rome"], "answer": "Paris"},
                {"question": "1 + 1?", "options": ["1", "2"], "answer": "2"},
                {"question": "Sky?", "options": ["blue", "green"], "answer": "blue"},
            ],
        )
        form = trivia_form(triviaAnswers=[{"selected": " paris"}, {"selected": 2}, {"selected": None}])

        submission = await self.workflow.submit("sess_1", form)

        self.assertEqual(submission.score, 2)

    async def test_trivia_accepts_numeric_and_null_answers(self):
        form = trivia_form(triviaAnswers='[{"selected": 2}, {"selected": null}]')

        submission = await self.workflow.submit("sess_1", form)

        self.assertEqual([a.selected for a in submission.trivia_answers], [2, None])
        [doc] = await self.submissions.list_all()
        self.assertEqual(doc["triviaAnswers"][0], {"selected": 2})

    async def test_rejected_sessions_leave_no_locks_behind(self):
        for i in range(50):
            with self.assertRaises(Unauthorized):
                await self.workflow.submit(f"bogus_{i}", trivia_form())

        self.assertEqual(self.workflow.locks, {})

        await self.workflow.submit("sess_1", trivia_form())
        with self.assertRaises(Conflict):
            await self.workflow.submit("sess_1", trivia_form())

        self.assertEqual(self.workflow.locks, {})

    async def test_concurrent_submits_release_their_lock(self):
        await asyncio.gather(
            self.workflow.submit("sess_1", trivia_form()),
            self.workflow.submit("sess_1", trivia_form()),
            self.workflow.submit("sess_1", trivia_form()),
            return_exceptions=True,
        )

        self.assertEqual(self.workflow.locks, {})
        self.assertEqual(len(await self.submissions.list_all()), 1)

    async def test_file_submission_stores_file_then_record(self):
        submission = await self.workflow.submit("sess_1", file_form())

        self.assertEqual(submission.original_filename, "my cat.png")
        self.assertTrue(submission.saved_filename.startswith("bob_smith_photo_contest_"))
        self.assertTrue(submission.saved_filename.endswith("_my_cat.png"))
        self.assertIn(f"uploads/{submission.saved_filename}", self.store.files)
        self.assertTrue((await self._entries())[0]["used"])

    async def test_file_variant_requires_a_file(self):
        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", file_form(file=None))

        with self.assertRaises(InvalidPayload):
            await self.workflow.submit("sess_1", file_form(file=UploadedFile(filename="a.txt", content=b"")))

        self.assertFalse((await self._entries())[0].get("used"))

    async def test_oversized_file_is_rejected(self):
        big = UploadedFile(filename="big.bin", content=b"x" * 11)

        with mock.patch("backend.contest_entry.workflow.settings.MAX_UPLOAD_BYTES", 10):
            with self.assertRaises(InvalidPayload):
                await self.workflow.submit("sess_1", file_form(file=big))

        self.assertEqual(self.store.files, {})

    async def test_failed_file_store_leaves_session_usable(self):
        with mock.patch.object(self.store, "put_file", side_effect=StorageUnavailable("Upload failed")):
            with self.assertRaises(StorageUnavailable):
                await self.workflow.submit("sess_1", file_form())

        self.assertEqual(await self.submissions.list_all(), [])
        await self.workflow.submit("sess_1", file_form())
        self.assertEqual(len(await self.submissions.list_all()), 1)

    async def test_failed_submission_write_leaves_session_usable(self):
        with mock.patch.object(self.submissions, "append", side_effect=StorageUnavailable()):
            with self.assertRaises(StorageUnavailable):
                await self.workflow.submit("sess_1", trivia_form())

        session = await self.ledger.find_usable_session("sess_1")
        self.assertFalse(session.used)

    async def test_interrupted_submit_is_closed_on_retry(self):
        # submission stored, ledger never updated
        await self.submissions.append(
            {"userName": "Alice", "sessionId": "sess_1", "triviaAnswers": [], "timeTaken": 3}
        )

        with self.assertRaises(Conflict):
            await self.workflow.submit("sess_1", trivia_form())

        self.assertEqual(len(await self.submissions.list_all()), 1)
        self.assertTrue((await self._entries())[0]["used"])

    async def test_reconcile_closes_pending_sessions(self):
        await self.ledger.record_payment(PaymentSession(id="sess_2", payment_status="paid"))
        await self.submissions.append(
            {"userName": "Alice", "sessionId": "sess_1", "triviaAnswers": [], "timeTaken": 3}
        )
        await self.workflow.submit("sess_2", file_form())

        closed = await self.workflow.reconcile()

        self.assertEqual(closed, ["sess_1"])
        self.assertEqual(await self.workflow.reconcile(), [])
        with self.assertRaises(Conflict):
            await self.ledger.find_usable_session("sess_1")


class PaymentConfirmedTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryBlobStore()
        self.ledger = LedgerStore(self.store)
        self.workflow = SubmissionWorkflow(
            ledger=self.ledger,
            submissions=SubmissionStore(self.store),
            store=self.store,
            trivia=TriviaBank(self.store),
        )

    def _event(self, event_type="checkout.session.completed", **obj) -> WebhookEvent:
        data = {"id": "cs_test_1", "payment_status": "paid", **obj}
        return WebhookEvent.model_validate({"id": "evt_1", "type": event_type, "data": {"object": data}})

    async def test_checkout_completed_records_payment(self):
        recorded = await self.workflow.on_payment_confirmed(
            self._event(customer_details={"email": "alice@example.com"})
        )

        self.assertTrue(recorded)
        [entry] = await self.ledger.list_all()
        self.assertEqual(entry["id"], "cs_test_1")
        self.assertEqual(entry["paymentStatus"], "paid")
        self.assertEqual(entry["customerEmail"], "alice@example.com")
        self.assertEqual(entry["eventId"], "evt_1")
        self.assertIn("timestamp", entry)

    async def test_missing_email_is_anonymous(self):
        await self.workflow.on_payment_confirmed(self._event(customer_details=None))

        [entry] = await self.ledger.list_all()
        self.assertEqual(entry["customerEmail"], "anonymous")

    async def test_redelivered_event_is_not_duplicated(self):
        await self.workflow.on_payment_confirmed(self._event())

        self.assertFalse(await self.workflow.on_payment_confirmed(self._event()))
        self.assertEqual(len(await self.ledger.list_all()), 1)

    async def test_other_events_are_ignored(self):
        self.assertFalse(await self.workflow.on_payment_confirmed(self._event("payment_intent.created")))

        self.assertEqual(await self.ledger.list_all(), [])

    async def test_session_object_without_id(self):
        event = WebhookEvent.model_validate(
            {"id": "evt_2", "type": "checkout.session.completed", "data": {"object": {}}}
        )

        with self.assertRaises(InvalidPayload):
            await self.workflow.on_payment_confirmed(event)
