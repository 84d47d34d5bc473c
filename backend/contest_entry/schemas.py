from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    content_type: Optional[str] = None


class SubmissionForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    contest: Optional[str] = None
    # JSON text from the form, or an already decoded list
    trivia_answers: Any = Field(default=None, alias="triviaAnswers")
    time_taken: Any = Field(default=None, alias="timeTaken")
    file: Optional[UploadedFile] = None


class CheckoutSessionOut(BaseModel):
    id: str


class WebhookAck(BaseModel):
    received: bool = True


class ReconcileOut(BaseModel):
    closed_sessions: list[str]
