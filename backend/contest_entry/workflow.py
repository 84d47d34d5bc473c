from __future__ import annotations

import asyncio
import json
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List

import structlog
from pydantic import ValidationError

from .db import settings
from .errors import Conflict, InvalidPayload, MissingSession
from .ledger import LedgerStore
from .ledger import ledger as default_ledger
from .models import CheckoutSessionObject, PaymentSession, Submission, TriviaAnswer, WebhookEvent
from .payments import CHECKOUT_COMPLETED
from .schemas import SubmissionForm
from .storage import blob_store
from .submissions import SubmissionStore
from .submissions import submissions as default_submissions
from .trivia import TriviaBank
from .trivia import trivia_bank as default_trivia_bank
from .utils import now_ms, saved_filename

logger = structlog.get_logger().bind(component="workflow")


class SubmissionWorkflow:
    def __init__(
        self,
        ledger: LedgerStore | None = None,
        submissions: SubmissionStore | None = None,
        store: Any = None,
        trivia: TriviaBank | None = None,
    ):
        self.ledger = ledger or default_ledger
        self.submissions = submissions or default_submissions
        self.store = store if store is not None else blob_store
        self.trivia = trivia or default_trivia_bank
        self.locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, session_id: str) -> AsyncIterator[None]:
        # Entries live only while a caller holds or waits on the lock.
        lock = self.locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if not self._holders[session_id]:
                del self._holders[session_id]
                del self.locks[session_id]

    async def submit(self, session_id: str | None, form: SubmissionForm) -> Submission:
        if not session_id or not session_id.strip():
            raise MissingSession()

        # Unknown ids are rejected before a lock is created for them.
        await self.ledger.find_usable_session(session_id)
        async with self._lock(session_id):
            await self.ledger.find_usable_session(session_id)

            # A submission already exists but the session was never closed:
            # the previous request stopped between the two writes.
            if await self.submissions.find_by_session(session_id):
                await self.ledger.mark_used(session_id)
                logger.warning("session_reconciled", session_id=session_id)
                raise Conflict()

            if form.contest == settings.TRIVIA_CONTEST_NAME:
                submission = await self._trivia_submission(session_id, form)
            else:
                submission = await self._file_submission(session_id, form)

            stored = await self.submissions.append(submission)
            await self.ledger.mark_used(session_id)

        logger.info(
            "submission_accepted",
            session_id=session_id,
            contest=stored.contest_name,
            kind="trivia" if stored.is_trivia else "file",
        )
        return stored

    async def _trivia_submission(self, session_id: str, form: SubmissionForm) -> Submission:
        if not form.name or form.trivia_answers in (None, "") or form.time_taken in (None, ""):
            raise InvalidPayload("Missing trivia submission data.")

        raw_answers = form.trivia_answers
        if isinstance(raw_answers, (str, bytes)):
            try:
                raw_answers = json.loads(raw_answers)
            except ValueError as exc:
                raise InvalidPayload("Invalid trivia answers format.") from exc
        if not isinstance(raw_answers, list):
            raise InvalidPayload("Invalid trivia answers format.")
        try:
            answers = [TriviaAnswer.model_validate(item) for item in raw_answers]
        except ValidationError as exc:
            raise InvalidPayload("Invalid trivia answers format.") from exc

        try:
            time_taken = float(form.time_taken)
        except (TypeError, ValueError) as exc:
            raise InvalidPayload("Invalid timeTaken value.") from exc
        if not math.isfinite(time_taken) or time_taken < 0:
            raise InvalidPayload("Invalid timeTaken value.")

        return Submission(
            user_name=form.name,
            contest_name=form.contest,
            session_id=session_id,
            trivia_answers=answers,
            time_taken=time_taken,
            score=await self.trivia.score(answers),
        )

    async def _file_submission(self, session_id: str, form: SubmissionForm) -> Submission:
        upload = form.file
        if upload is None or not upload.filename:
            raise InvalidPayload("No file uploaded.")
        if not upload.content:
            raise InvalidPayload("Uploaded file was empty.")
        if len(upload.content) > settings.MAX_UPLOAD_BYTES:
            raise InvalidPayload("Uploaded file is too large.")

        name = saved_filename(form.name, form.contest, upload.filename, now_ms())
        await self.store.put_file(name, upload.content, upload.content_type)

        return Submission(
            user_name=form.name,
            contest_name=form.contest,
            session_id=session_id,
            original_filename=upload.filename,
            saved_filename=name,
        )

    async def on_payment_confirmed(self, event: WebhookEvent) -> bool:
        if event.type != CHECKOUT_COMPLETED:
            logger.info("webhook_ignored", event_type=event.type, event_id=event.id)
            return False

        try:
            checkout = CheckoutSessionObject.model_validate(event.data.object)
        except ValidationError as exc:
            raise InvalidPayload("Checkout session object is malformed.") from exc

        return await self.ledger.record_payment(
            PaymentSession(
                id=checkout.id,
                payment_status=checkout.payment_status,
                customer_email=checkout.customer_email,
                event_id=event.id,
            )
        )

    async def reconcile(self) -> List[str]:
        """Close every paid session that already has a stored submission."""

        entries = await self.ledger.list_all()
        paid = {e.get("id") for e in entries if e.get("paymentStatus") == "paid"}
        consumed = {e.get("id") for e in entries if e.get("used")}

        closed: List[str] = []
        for doc in await self.submissions.list_all():
            session_id = doc.get("sessionId")
            if not session_id or session_id not in paid or session_id in consumed or session_id in closed:
                continue
            async with self._lock(session_id):
                try:
                    await self.ledger.mark_used(session_id)
                except Conflict:
                    continue
            closed.append(session_id)

        if closed:
            logger.warning("sessions_reconciled", count=len(closed))
        return closed


workflow = SubmissionWorkflow()
