from __future__ import annotations

import operator
from typing import Annotated, Optional

from typing_extensions import TypedDict

from schemas.article import ArticleContent, ImageRenderResult
from schemas.conversation import FeedbackStrategy
from schemas.ticket import TicketData


class GenerationState(TypedDict, total=False):
    """State carried through one generation pass (content, then images)."""

    # ── Identity ─────────────────────────────────────────────────────────────
    run_id: str           # Conversation run id
    ticket_id: str        # Jira issue key (e.g. TECH-456)

    # ── Inputs ───────────────────────────────────────────────────────────────
    ticket: TicketData
    questions: list[str]
    answers: list[str]                 # arrival order
    feedback: list[str]
    feedback_strategy: FeedbackStrategy
    previous_content: Optional[ArticleContent]

    # ── Outputs (populated progressively) ────────────────────────────────────
    content: Optional[ArticleContent]

    # ── Routing / control flow ────────────────────────────────────────────────
    should_stop: bool

    # ── Append-only lists (LangGraph reducer) ─────────────────────────────────
    image_results: Annotated[list[ImageRenderResult], operator.add]
    errors: Annotated[list[str], operator.add]
