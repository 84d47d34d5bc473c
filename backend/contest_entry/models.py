from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import Conflict
from .utils import now_iso


class _Document(BaseModel):
    # Stored documents use camelCase keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# States: created -> consumed
class SessionState(str, Enum):
    CREATED = "created"
    CONSUMED = "consumed"


class PaymentSession(_Document):
    id: str
    payment_status: str
    customer_email: str = "anonymous"
    timestamp: str = Field(default_factory=now_iso)
    used: bool = False
    event_id: Optional[str] = None

    @property
    def state(self) -> SessionState:
        return SessionState.CONSUMED if self.used else SessionState.CREATED

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    def consume(self) -> None:
        if self.state is SessionState.CONSUMED:
            raise Conflict()
        self.used = True


class TriviaAnswer(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Any JSON value; compared as text when scored.
    selected: Any = None


class TriviaQuestion(BaseModel):
    question: str
    options: List[str] | Dict[str, str]
    answer: str


class Submission(_Document):
    user_name: Optional[str] = None
    contest_name: Optional[str] = None
    timestamp: str = Field(default_factory=now_iso)
    session_id: Optional[str] = None

    # trivia
    trivia_answers: Optional[List[TriviaAnswer]] = None
    time_taken: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    score: Optional[int] = None

    # file
    original_filename: Optional[str] = None
    saved_filename: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_variant(self):
        trivia = self.trivia_answers is not None or self.time_taken is not None
        file = self.original_filename is not None or self.saved_filename is not None
        if trivia == file:
            raise ValueError("submission must carry either trivia answers or a file, not both")
        if trivia and (self.trivia_answers is None or self.time_taken is None):
            raise ValueError("trivia submission needs triviaAnswers and timeTaken")
        if file and (self.original_filename is None or self.saved_filename is None):
            raise ValueError("file submission needs originalFilename and savedFilename")
        return self

    @property
    def is_trivia(self) -> bool:
        return self.trivia_answers is not None


class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    payment_status: str = "unpaid"
    customer_details: Optional[Dict[str, Any]] = None

    @property
    def customer_email(self) -> str:
        return (self.customer_details or {}).get("email") or "anonymous"


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: WebhookEventData = Field(default_factory=WebhookEventData)
