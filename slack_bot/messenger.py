from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from slack_sdk.web.async_client import AsyncWebClient

from app_logging.activity_logger import ActivityLogger

logger = ActivityLogger("slack_messenger")


class Messenger(ABC):
    """Outbound side of the chat surface, always scoped to channel + thread."""

    @abstractmethod
    async def post_message(
        self,
        channel: str,
        thread_ts: str,
        text: str,
        blocks: Optional[list[dict]] = None,
    ) -> Optional[str]:
        """Post into the thread. Returns the new message ts when known."""
        ...

    @abstractmethod
    async def update_message(
        self,
        channel: str,
        ts: str,
        text: str,
        blocks: Optional[list[dict]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def upload_file(
        self,
        channel: str,
        thread_ts: str,
        content: bytes,
        filename: str,
        title: str,
        initial_comment: Optional[str] = None,
    ) -> None:
        ...


class SlackMessenger(Messenger):
    def __init__(self, client: AsyncWebClient) -> None:
        self.client = client

    async def post_message(
        self,
        channel: str,
        thread_ts: str,
        text: str,
        blocks: Optional[list[dict]] = None,
    ) -> Optional[str]:
        kwargs: dict = {"channel": channel, "thread_ts": thread_ts, "text": text}
        if blocks is not None:
            kwargs["blocks"] = blocks
        response = await self.client.chat_postMessage(**kwargs)
        return response.get("ts")

    async def update_message(
        self,
        channel: str,
        ts: str,
        text: str,
        blocks: Optional[list[dict]] = None,
    ) -> None:
        await self.client.chat_update(
            channel=channel,
            ts=ts,
            text=text,
            blocks=blocks if blocks is not None else [],
        )

    async def upload_file(
        self,
        channel: str,
        thread_ts: str,
        content: bytes,
        filename: str,
        title: str,
        initial_comment: Optional[str] = None,
    ) -> None:
        await self.client.files_upload_v2(
            channel=channel,
            thread_ts=thread_ts,
            content=content,
            filename=filename,
            title=title,
            initial_comment=initial_comment,
        )
        logger.debug("slack_file_uploaded", channel=channel, thread_ts=thread_ts, filename=filename)
