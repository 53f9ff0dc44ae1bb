"""
Slack surface: translates Bolt events and button clicks into workflow calls.

Every handler runs inside its own structlog context (thread key, user) and
swallows-and-logs unexpected exceptions so one broken conversation never
affects the socket connection or other threads.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from app_logging.activity_logger import ActivityLogger
from config.settings import Settings
from schemas.conversation import ThreadKey
from slack_bot import blocks
from slack_bot.messenger import Messenger
from workflow.conversation import ArticleWorkflow

logger = ActivityLogger("slack_app")

# Message subtypes that are edits, joins, bot posts etc. rather than user text
_IGNORED_SUBTYPES_PREFIX = ("bot_", "message_", "channel_", "group_")


def thread_key_for(event: dict) -> Optional[ThreadKey]:
    """Replies belong to their thread; a top-level message starts one."""
    channel = event.get("channel")
    thread_ts = event.get("thread_ts") or event.get("ts")
    if not channel or not thread_ts:
        return None
    return ThreadKey(channel_id=channel, thread_ts=thread_ts)


def _is_user_message(event: dict) -> bool:
    if event.get("bot_id"):
        return False
    subtype = event.get("subtype")
    if subtype and subtype.startswith(_IGNORED_SUBTYPES_PREFIX):
        return False
    return bool(event.get("user")) and isinstance(event.get("text"), str)


class SlackEventRouter:
    def __init__(self, workflow: ArticleWorkflow, messenger: Messenger) -> None:
        self.workflow = workflow
        self.messenger = messenger

    async def on_message(self, event: dict, bot_user_id: Optional[str] = None) -> None:
        if not _is_user_message(event):
            return

        text = event["text"]
        # Mentions arrive twice (message + app_mention); the mention handler owns them.
        if bot_user_id and f"<@{bot_user_id}>" in text:
            return

        key = thread_key_for(event)
        if key is None:
            return

        with structlog.contextvars.bound_contextvars(thread=key.token, user_id=event["user"]):
            try:
                await self.workflow.handle_message(key, event["user"], text)
            except Exception as exc:
                logger.error("slack_message_handler_failed", exc=exc)

    async def on_mention(self, event: dict) -> None:
        key = thread_key_for(event)
        user_id = event.get("user")
        if key is None or not user_id:
            return

        with structlog.contextvars.bound_contextvars(thread=key.token, user_id=user_id):
            try:
                await self.workflow.handle_mention(key, user_id, event.get("text") or "")
            except Exception as exc:
                logger.error("slack_mention_handler_failed", exc=exc)

    async def on_action(self, action_id: str, body: dict) -> None:
        action = (body.get("actions") or [{}])[0]
        key = ThreadKey.from_token(action.get("value"))
        user_id = (body.get("user") or {}).get("id", "")
        if key is None:
            logger.warning("slack_action_without_thread", action_id=action_id)
            return

        with structlog.contextvars.bound_contextvars(thread=key.token, user_id=user_id,
                                                     action_id=action_id):
            try:
                await self._retire_buttons(body, action_id, user_id)

                if action_id == blocks.APPROVE_ACTION_ID:
                    await self.workflow.approve(key, user_id)
                elif action_id == blocks.REQUEST_CHANGES_ACTION_ID:
                    await self.workflow.request_changes(key)
                elif action_id == blocks.CANCEL_ACTION_ID:
                    await self.workflow.cancel(key)
                else:
                    logger.warning("slack_action_unknown")
            except Exception as exc:
                logger.error("slack_action_handler_failed", exc=exc)

    async def _retire_buttons(self, body: dict, action_id: str, user_id: str) -> None:
        """Replace the clicked review message so the buttons can't be pressed twice."""
        channel = (body.get("channel") or {}).get("id")
        ts = (body.get("message") or {}).get("ts")
        if not channel or not ts:
            return

        status = {
            blocks.APPROVE_ACTION_ID: f":hourglass_flowing_sand: Publishing... (approved by <@{user_id}>)",
            blocks.REQUEST_CHANGES_ACTION_ID: f":pencil2: Waiting for your feedback... (requested by <@{user_id}>)",
            blocks.CANCEL_ACTION_ID: f":x: KBA generation cancelled by <@{user_id}>",
        }.get(action_id, ":white_check_mark: Done")

        try:
            await self.messenger.update_message(channel, ts, text=status,
                                                blocks=blocks.status_blocks(status))
        except Exception as exc:
            logger.warning("slack_button_update_failed", error_message=str(exc))


def create_app(
    router: SlackEventRouter,
    settings: Settings,
    client: Optional[AsyncWebClient] = None,
) -> AsyncApp:
    """Build the Bolt app with all listeners bound to `router`."""
    if client is not None:
        app = AsyncApp(client=client)
    else:
        app = AsyncApp(token=settings.slack_bot_token)

    @app.event("app_mention")
    async def handle_app_mention(event: dict) -> None:
        await router.on_mention(event)

    @app.event("message")
    async def handle_message(event: dict, context: Any) -> None:
        await router.on_message(event, bot_user_id=context.get("bot_user_id"))

    for action_id in (
        blocks.APPROVE_ACTION_ID,
        blocks.REQUEST_CHANGES_ACTION_ID,
        blocks.CANCEL_ACTION_ID,
    ):
        @app.action(action_id)
        async def handle_action(ack: Any, body: dict, action: dict) -> None:
            await ack()
            await router.on_action(action["action_id"], body)

    @app.error
    async def handle_error(error: Exception, body: dict) -> None:
        logger.error("slack_bolt_error", exc=error, event_type=(body or {}).get("type"))

    return app
