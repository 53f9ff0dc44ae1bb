from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.article import ArticleDraft
from schemas.ticket import TicketData


class ConversationStage(str, Enum):
    CREATED = "created"
    FETCHING = "fetching"
    ASKING_QUESTIONS = "asking_questions"
    GENERATING = "generating"
    REVIEW = "review"
    PUBLISHING = "publishing"
    COMPLETE = "complete"


class FeedbackStrategy(str, Enum):
    """How "request changes" feedback is combined with earlier answers."""

    REFINE = "refine"    # answers reset; previous draft refined with the feedback
    REPLACE = "replace"  # answers reset; content regenerated from the feedback alone
    MERGE = "merge"      # answers kept; content regenerated from answers + feedback


_TOKEN_SEPARATOR = ":"


class ThreadKey(BaseModel):
    """Channel + thread timestamp; scopes exactly one conversation."""

    model_config = ConfigDict(frozen=True)

    channel_id: str
    thread_ts: str

    @property
    def token(self) -> str:
        """Opaque correlation token carried by the review buttons."""
        return f"{self.channel_id}{_TOKEN_SEPARATOR}{self.thread_ts}"

    @classmethod
    def from_token(cls, token: object) -> Optional["ThreadKey"]:
        if not isinstance(token, str):
            return None
        channel_id, sep, thread_ts = token.partition(_TOKEN_SEPARATOR)
        if not sep or not channel_id or not thread_ts:
            return None
        return cls(channel_id=channel_id, thread_ts=thread_ts)

    def __str__(self) -> str:
        return self.token


class ConversationContext(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    key: ThreadKey
    initiating_user_id: str
    ticket: Optional[TicketData] = None
    stage: ConversationStage = ConversationStage.CREATED

    questions_asked: list[str] = Field(default_factory=list)
    answers: dict[str, str] = Field(
        default_factory=dict,
        description="answer_<n> -> raw reply text, numbered by arrival order",
    )
    feedback: list[str] = Field(default_factory=list)
    awaiting_feedback: bool = False

    draft: Optional[ArticleDraft] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    @property
    def ticket_id(self) -> Optional[str]:
        return self.ticket.ticket_id if self.ticket else None

    @property
    def remaining_questions(self) -> int:
        return max(len(self.questions_asked) - len(self.answers), 0)

    def add_answer(self, text: str) -> str:
        slot = f"answer_{len(self.answers) + 1}"
        self.answers[slot] = text
        return slot

    def ordered_answers(self) -> list[str]:
        return [self.answers[k] for k in sorted(self.answers, key=_slot_number)]


def _slot_number(slot: str) -> int:
    _, _, number = slot.rpartition("_")
    return int(number) if number.isdigit() else 0
