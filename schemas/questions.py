from __future__ import annotations

from pydantic import BaseModel, Field


class ClarifyingQuestions(BaseModel):
    questions: list[str] = Field(
        default_factory=list,
        description=(
            "Specific questions whose answers are needed to write the article. "
            "Empty when the ticket already contains everything."
        ),
    )
