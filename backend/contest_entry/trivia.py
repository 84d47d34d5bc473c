from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from .db import TRIVIA_KEY, settings
from .models import TriviaAnswer, TriviaQuestion
from .storage import blob_store

logger = structlog.get_logger().bind(component="trivia")


def _normalise(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


class TriviaBank:
    """Read-only trivia questions stored as ``trivia-contest.json``.

    The document is either a list of questions or an object mapping a
    contest slug to its list, with ``"default"`` as the fallback.
    """

    def __init__(self, store: Any = None):
        self.store = store if store is not None else blob_store

    async def questions(self, slug: str | None = None) -> List[TriviaQuestion]:
        doc = await self.store.load(TRIVIA_KEY)
        if isinstance(doc, dict):
            raw = doc.get(slug or "default") or doc.get("default") or []
        elif isinstance(doc, list):
            raw = doc
        else:
            raw = []
        questions = []
        for item in raw:
            try:
                questions.append(TriviaQuestion.model_validate(item))
            except ValidationError:
                logger.warning("trivia_question_skipped", slug=slug)
        return questions

    async def public_questions(self, slug: str | None = None) -> List[Dict[str, Any]]:
        exclude = None if settings.TRIVIA_EXPOSE_ANSWERS else {"answer"}
        return [q.model_dump(exclude=exclude) for q in await self.questions(slug)]

    async def score(self, answers: List[TriviaAnswer], slug: str | None = None) -> Optional[int]:
        questions = await self.questions(slug)
        if not questions:
            return None
        return sum(
            1 for answer, q in zip(answers, questions) if _normalise(answer.selected) == _normalise(q.answer)
        )


trivia_bank = TriviaBank()
