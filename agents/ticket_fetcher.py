from __future__ import annotations

from typing import Any, Optional

import httpx

from app_logging.activity_logger import ActivityLogger
from config.settings import settings
from schemas.ticket import TicketComment, TicketData

logger = ActivityLogger("ticket_fetcher")

_BLOCK_NODES = {"paragraph", "heading", "listItem", "codeBlock", "blockquote"}


class TicketFetchError(Exception):
    """Jira could not be reached or answered with an error."""


class TicketNotFoundError(TicketFetchError):
    """Jira answered 404 for the requested issue key."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Jira ticket {ticket_id} not found")
        self.ticket_id = ticket_id


def _flatten_adf(adf: Any) -> str:
    """Recursively extract plain text from Atlassian Document Format."""
    if adf is None:
        return ""
    if isinstance(adf, str):
        return adf
    if isinstance(adf, list):
        return "".join(_flatten_adf(item) for item in adf)
    if isinstance(adf, dict):
        text = adf.get("text", "") if adf.get("type") == "text" else ""
        text += "".join(_flatten_adf(child) for child in adf.get("content", []) or [])
        if adf.get("type") in _BLOCK_NODES:
            text += "\n"
        if adf.get("type") == "doc":
            return text.strip()
        return text
    return str(adf)


def _display_name(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        return obj.get("displayName")
    return None


def _name(obj: Any) -> str:
    if isinstance(obj, dict):
        return obj.get("name", "") or ""
    return str(obj) if obj else ""


def _parse_jira_response(data: dict, ticket_id: str, comments: list[TicketComment]) -> TicketData:
    """Convert a raw Jira REST issue payload to TicketData."""
    fields = data.get("fields", {}) or {}

    custom_fields = {
        key: value
        for key, value in fields.items()
        if key.startswith("customfield_") and value
    }

    return TicketData(
        ticket_id=data.get("key") or ticket_id,
        title=fields.get("summary", "") or "",
        description=_flatten_adf(fields.get("description")),
        issue_type=_name(fields.get("issuetype")),
        priority=_name(fields.get("priority")),
        status=_name(fields.get("status")),
        assignee=_display_name(fields.get("assignee")),
        reporter=_display_name(fields.get("reporter")),
        created_at=fields.get("created"),
        updated_at=fields.get("updated"),
        resolution=_name(fields.get("resolution")) or None,
        comments=comments,
        custom_fields=custom_fields,
    )


def _parse_comments(data: dict) -> list[TicketComment]:
    return [
        TicketComment(
            author=_display_name(c.get("author")) or "Unknown",
            body=_flatten_adf(c.get("body")),
            created_at=c.get("created"),
        )
        for c in data.get("comments", []) or []
    ]


class TicketFetcher:
    """Reads issues from the Jira Cloud REST API (v3)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        api_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.jira_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/api/3",
            auth=(username or settings.jira_username, api_token or settings.jira_api_token),
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )

    def browse_url(self, ticket_id: str) -> str:
        """Canonical address of the ticket in the Jira UI."""
        return f"{self.base_url}/browse/{ticket_id}"

    async def fetch(self, ticket_id: str) -> TicketData:
        """
        Fetch a ticket and its comments.

        Raises TicketNotFoundError on 404 and TicketFetchError on any other
        HTTP or transport failure.
        """
        try:
            response = await self._client.get(
                f"/issue/{ticket_id}",
                params={"expand": "renderedFields,names"},
            )
            if response.status_code == 404:
                raise TicketNotFoundError(ticket_id)
            response.raise_for_status()
            data = response.json()
        except TicketNotFoundError:
            logger.warning("jira_ticket_not_found", ticket_id=ticket_id)
            raise
        except httpx.HTTPStatusError as exc:
            logger.error("jira_fetch_failed", exc=exc, ticket_id=ticket_id,
                         status_code=exc.response.status_code)
            raise TicketFetchError(
                f"Failed to fetch Jira ticket: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("jira_fetch_failed", exc=exc, ticket_id=ticket_id)
            raise TicketFetchError(f"Failed to fetch Jira ticket: {exc}") from exc

        comments = await self._fetch_comments(ticket_id)
        ticket = _parse_jira_response(data, ticket_id, comments)

        logger.info(
            "jira_ticket_fetched",
            ticket_id=ticket.ticket_id,
            title=ticket.title,
            comment_count=len(ticket.comments),
        )
        return ticket

    async def _fetch_comments(self, ticket_id: str) -> list[TicketComment]:
        """Comments are best-effort; a failure here yields an empty list."""
        try:
            response = await self._client.get(f"/issue/{ticket_id}/comment")
            response.raise_for_status()
            return _parse_comments(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("jira_comments_fetch_failed", ticket_id=ticket_id, error_message=str(exc))
            return []

    async def aclose(self) -> None:
        await self._client.aclose()
