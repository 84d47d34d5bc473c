from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from .db import UPLOADS_KEY, JsonCollection
from .errors import InvalidPayload
from .models import Submission
from .storage import blob_store

logger = structlog.get_logger().bind(component="submissions")


class SubmissionStore:
    """Append-only log of contest entries (``uploads.json``)."""

    def __init__(self, store: Any = None):
        self.collection = JsonCollection(store if store is not None else blob_store, UPLOADS_KEY)

    async def append(self, submission: Submission | Dict[str, Any]) -> Submission:
        try:
            if isinstance(submission, Submission):
                # re-run the variant check on the current field values
                submission = Submission.model_validate(submission.model_dump())
            else:
                submission = Submission.model_validate(submission)
        except ValidationError as exc:
            logger.warning("submission_rejected", errors=exc.error_count())
            raise InvalidPayload("Submission must contain either trivia answers or a file.") from exc

        doc = submission.to_document()
        await self.collection.update(lambda docs: docs.append(doc))
        return submission

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self.collection.read()

    async def find_by_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        for doc in await self.collection.read():
            if doc.get("sessionId") == session_id:
                return doc
        return None


submissions = SubmissionStore()
