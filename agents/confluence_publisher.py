from __future__ import annotations

import html
from typing import Any, Awaitable, Callable, Optional

import httpx

from app_logging.activity_logger import ActivityLogger
from config.settings import settings
from schemas.article import ArticleContent, GeneratedImage, PublishedPage

logger = ActivityLogger("confluence_publisher")

ImageLoader = Callable[[str], Awaitable[bytes]]


class PublishError(Exception):
    """Confluence rejected or could not receive the page."""


def _escape(text: str) -> str:
    return html.escape(text or "", quote=True).replace("\n", "<br/>")


def build_storage_body(
    content: ArticleContent,
    images: list[GeneratedImage],
    ticket_id: str,
    ticket_url: str,
) -> str:
    """Render article content as Confluence storage-format XHTML.

    Images are referenced by attachment filename; the attachments themselves
    are uploaded after the page exists.
    """
    parts = [
        f'<p><strong>Related Jira Ticket:</strong> '
        f'<a href="{html.escape(ticket_url, quote=True)}">{html.escape(ticket_id)}</a></p>',
        f"<h2>Problem</h2>\n<p>{_escape(content.problem)}</p>",
        f"<h2>Solution</h2>\n<p>{_escape(content.solution)}</p>",
        "<h2>Step-by-Step Instructions</h2>",
    ]

    for step in content.steps:
        parts.append(f"<h3>Step {step.step_number}</h3>")
        parts.append(f"<p>{_escape(step.description)}</p>")

        if step.code_snippet:
            # CDATA cannot contain its own terminator
            code = step.code_snippet.replace("]]>", "]]]]><![CDATA[>")
            parts.append(
                '<ac:structured-macro ac:name="code">'
                f"<ac:plain-text-body><![CDATA[{code}]]></ac:plain-text-body>"
                "</ac:structured-macro>"
            )

        for image in (i for i in images if i.step_number == step.step_number):
            parts.append(f"<p><strong>{image.platform.label}:</strong></p>")
            parts.append(
                f'<p><ac:image><ri:attachment ri:filename="{image.attachment_filename}" />'
                "</ac:image></p>"
            )

    if content.additional_notes:
        parts.append(f"<h2>Additional Notes</h2>\n<p>{_escape(content.additional_notes)}</p>")

    if content.tags:
        parts.append(f"<p><strong>Tags:</strong> {_escape(', '.join(content.tags))}</p>")

    return "\n".join(parts) + "\n"


def _label_name(tag: str) -> str:
    """Confluence labels cannot contain whitespace."""
    return "-".join(tag.lower().split())


class ConfluencePublisher:
    """Creates and updates knowledge base pages through the Confluence REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        space_key: Optional[str] = None,
        parent_page_id: Optional[str] = None,
        ticket_url_for: Optional[Callable[[str], str]] = None,
        image_loader: Optional[ImageLoader] = None,
        client: Optional[httpx.AsyncClient] = None,
        dry_run: Optional[bool] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.confluence_url).rstrip("/")
        self.space_key = space_key or settings.confluence_space_key
        self.parent_page_id = (
            parent_page_id if parent_page_id is not None else settings.confluence_parent_page_id
        )
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self._ticket_url_for = ticket_url_for or (
            lambda key: f"{settings.jira_url.rstrip('/')}/browse/{key}"
        )
        self._client = client or httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/api",
            auth=(settings.confluence_user, settings.confluence_token),
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
        self._image_loader = image_loader or self._download_image

    # ── Addresses ─────────────────────────────────────────────────────────────

    def page_url(self, page_id: str) -> str:
        return f"{self.base_url}/spaces/{self.space_key}/pages/{page_id}"

    # ── Operations ────────────────────────────────────────────────────────────

    async def publish(
        self,
        content: ArticleContent,
        images: list[GeneratedImage],
        ticket_id: str,
        page_id: Optional[str] = None,
        update_existing: Optional[bool] = None,
    ) -> PublishedPage:
        """
        Create the article page, or update an existing one.

        An explicit page_id always updates. Otherwise, with update_existing
        (CONFLUENCE_UPDATE_EXISTING), a page already mentioning the ticket key
        in the space is updated instead of creating a duplicate.
        """
        if update_existing is None:
            update_existing = settings.confluence_update_existing

        if page_id is None and update_existing:
            page_id = await self.find_page_by_ticket(ticket_id)

        if page_id:
            return await self.update_page(page_id, content, images, ticket_id)
        return await self.create_page(content, images, ticket_id)

    async def create_page(
        self,
        content: ArticleContent,
        images: list[GeneratedImage],
        ticket_id: str,
    ) -> PublishedPage:
        body = build_storage_body(content, images, ticket_id, self._ticket_url_for(ticket_id))
        payload: dict[str, Any] = {
            "type": "page",
            "title": content.title,
            "space": {"key": self.space_key},
            "body": {"storage": {"value": body, "representation": "storage"}},
            "metadata": {"labels": [{"name": _label_name(t)} for t in content.tags]},
        }
        if self.parent_page_id:
            payload["ancestors"] = [{"id": self.parent_page_id}]

        if self.dry_run:
            logger.info("dry_run_skip_confluence_create", ticket_id=ticket_id, title=content.title)
            return PublishedPage(page_id="dry-run", url=self.page_url("dry-run"))

        try:
            response = await self._client.post("/content", json=payload)
            response.raise_for_status()
            page_id = str(response.json()["id"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("confluence_create_failed", exc=exc, ticket_id=ticket_id,
                         detail=_error_detail(exc))
            raise PublishError(f"Failed to create Confluence page: {_describe(exc)}") from exc

        missing = await self._attach(page_id, images)

        page = PublishedPage(
            page_id=page_id, url=self.page_url(page_id), version=1, missing_attachments=missing
        )
        logger.info("confluence_page_created", ticket_id=ticket_id, page_id=page_id, url=page.url,
                    missing_attachments=missing or None)
        return page

    async def update_page(
        self,
        page_id: str,
        content: ArticleContent,
        images: list[GeneratedImage],
        ticket_id: str,
    ) -> PublishedPage:
        body = build_storage_body(content, images, ticket_id, self._ticket_url_for(ticket_id))

        if self.dry_run:
            logger.info("dry_run_skip_confluence_update", ticket_id=ticket_id, page_id=page_id)
            return PublishedPage(page_id=page_id, url=self.page_url(page_id))

        try:
            current = await self._client.get(f"/content/{page_id}", params={"expand": "version"})
            current.raise_for_status()
            version = int(current.json()["version"]["number"]) + 1

            response = await self._client.put(
                f"/content/{page_id}",
                json={
                    "id": page_id,
                    "type": "page",
                    "title": content.title,
                    "version": {"number": version},
                    "body": {"storage": {"value": body, "representation": "storage"}},
                },
            )
            response.raise_for_status()
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.error("confluence_update_failed", exc=exc, ticket_id=ticket_id,
                         page_id=page_id, detail=_error_detail(exc))
            raise PublishError(f"Failed to update Confluence page: {_describe(exc)}") from exc

        missing = await self._attach(page_id, images)

        page = PublishedPage(
            page_id=page_id, url=self.page_url(page_id), version=version, missing_attachments=missing
        )
        logger.info("confluence_page_updated", ticket_id=ticket_id, page_id=page_id, version=version,
                    missing_attachments=missing or None)
        return page

    async def find_page_by_ticket(self, ticket_id: str) -> Optional[str]:
        """Return the id of a page in the space mentioning the ticket key, if any."""
        cql = f'space="{self.space_key}" AND type=page AND text~"{ticket_id}"'
        try:
            response = await self._client.get("/content/search", params={"cql": cql, "limit": 10})
            response.raise_for_status()
            results = response.json().get("results", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("confluence_search_failed", ticket_id=ticket_id, error_message=str(exc))
            return None

        if not results:
            return None
        return str(results[0].get("id")) if results[0].get("id") else None

    async def upload_attachments(self, page_id: str, images: list[GeneratedImage]) -> list[str]:
        """
        Upload each image as a page attachment named after its step/platform.

        Runs after the page body is stored. A failed upload is logged and
        skipped. Bytes kept on the image are uploaded as-is; only images
        without them are fetched from their url. Returns the filenames that
        were uploaded.
        """
        uploaded: list[str] = []
        for image in images:
            filename = image.attachment_filename
            try:
                data = image.data if image.data is not None else await self._image_loader(image.url)
                # PUT creates the attachment or adds a new version of it
                response = await self._client.put(
                    f"/content/{page_id}/child/attachment",
                    headers={"X-Atlassian-Token": "no-check"},
                    files={"file": (filename, data, "image/png")},
                )
                response.raise_for_status()
                uploaded.append(filename)
                logger.info("confluence_attachment_uploaded", page_id=page_id, filename=filename)
            except httpx.HTTPError as exc:
                logger.warning(
                    "confluence_attachment_failed",
                    page_id=page_id,
                    filename=filename,
                    error_message=str(exc),
                )
        return uploaded

    async def _attach(self, page_id: str, images: list[GeneratedImage]) -> list[str]:
        """Upload attachments; return the filenames the body references but the page lacks."""
        uploaded = set(await self.upload_attachments(page_id, images))
        return [i.attachment_filename for i in images if i.attachment_filename not in uploaded]

    async def _download_image(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True) as http:
            response = await http.get(url)
            response.raise_for_status()
            return response.content

    async def aclose(self) -> None:
        await self._client.aclose()


def _describe(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    return str(exc) or type(exc).__name__


def _error_detail(exc: Exception) -> Optional[str]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.text[:500]
    return None
