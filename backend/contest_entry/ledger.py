from __future__ import annotations

from typing import Any, Dict, List

import structlog

from .db import ENTRIES_KEY, JsonCollection
from .errors import Conflict, Unauthorized
from .models import PaymentSession
from .storage import blob_store

logger = structlog.get_logger().bind(component="ledger")


def _rows_for(docs: List[Dict[str, Any]], session_id: str) -> List[Dict[str, Any]]:
    return [doc for doc in docs if doc.get("id") == session_id]


def _usable(rows: List[Dict[str, Any]]) -> PaymentSession:
    """Collapse every ledger row for one id into a single session.

    Older ledgers may hold one row per webhook delivery; the session counts
    as consumed as soon as any of them is.
    """

    paid = [PaymentSession.model_validate(row) for row in rows if row.get("paymentStatus") == "paid"]
    if not paid:
        raise Unauthorized()
    session = paid[0]
    if any(row.get("used") for row in rows):
        session.used = True
    return session


class LedgerStore:
    """Payment sessions and their consumption state (``entries.json``)."""

    def __init__(self, store: Any = None):
        self.collection = JsonCollection(store if store is not None else blob_store, ENTRIES_KEY)

    async def record_payment(self, session: PaymentSession) -> bool:
        """Store a confirmed payment; repeat deliveries for a known id are merged."""

        def mutate(docs: List[Dict[str, Any]]) -> bool:
            existing = _rows_for(docs, session.id)
            if not existing:
                doc = session.to_document()
                doc.pop("used", None)
                docs.append(doc)
                return True
            if session.is_paid and not any(row.get("paymentStatus") == "paid" for row in existing):
                existing[0]["paymentStatus"] = session.payment_status
                return True
            return False

        changed = await self.collection.update(mutate)
        if changed:
            logger.info("payment_recorded", session_id=session.id, payment_status=session.payment_status)
        else:
            logger.info("payment_redelivery_ignored", session_id=session.id, event_id=session.event_id)
        return bool(changed)

    async def find_usable_session(self, session_id: str) -> PaymentSession:
        docs = await self.collection.read()
        session = _usable(_rows_for(docs, session_id))
        if session.used:
            raise Conflict()
        return session

    async def mark_used(self, session_id: str) -> PaymentSession:
        def mutate(docs: List[Dict[str, Any]]) -> PaymentSession:
            rows = _rows_for(docs, session_id)
            session = _usable(rows)
            session.consume()
            for row in rows:
                row["used"] = True
            return session

        session = await self.collection.update(mutate)
        logger.info("session_consumed", session_id=session_id)
        return session

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self.collection.read()


ledger = LedgerStore()
