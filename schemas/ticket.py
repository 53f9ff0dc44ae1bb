from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TicketComment(BaseModel):
    author: str = "Unknown"
    body: str = ""
    created_at: Optional[str] = None


class TicketData(BaseModel):
    ticket_id: str = Field(..., description="Jira issue key, e.g. TECH-456")
    title: str
    description: str = ""
    issue_type: str = ""
    priority: str = ""
    status: str = ""
    assignee: Optional[str] = None
    reporter: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    resolution: Optional[str] = None
    comments: list[TicketComment] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(
        default_factory=dict,
        description="Non-empty customfield_* values keyed by field id",
    )
