"""
Slack KBA Bot: entry point

Usage:
    # Run the Slack bot (Socket Mode)
    python main.py --mode bot

    # Run without writing to Confluence
    python main.py --mode bot --dry-run

    # Check which ticket key the bot would pick out of a message
    python main.py --mode parse --text "https://your-org.atlassian.net/browse/PROJ-123"
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys


def _configure() -> None:
    from config.logging_config import configure_logging
    configure_logging()


async def _run_bot() -> None:
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
    from slack_sdk.web.async_client import AsyncWebClient

    from agents.confluence_publisher import ConfluencePublisher
    from agents.content_agent import ContentAgent
    from agents.image_agent import ImageAgent
    from agents.question_agent import QuestionAgent
    from agents.ticket_fetcher import TicketFetcher
    from app_logging.activity_logger import ActivityLogger
    from config.settings import settings
    from scheduler.sweeper import start_sweeper, stop_sweeper
    from slack_bot.app import SlackEventRouter, create_app
    from slack_bot.messenger import SlackMessenger
    from workflow.conversation import ArticleWorkflow
    from workflow.store import ConversationStore

    logger = ActivityLogger("main")

    ticket_fetcher = TicketFetcher()
    image_agent = ImageAgent()
    publisher = ConfluencePublisher(
        ticket_url_for=ticket_fetcher.browse_url,
        image_loader=image_agent.download,
    )
    store = ConversationStore()

    messenger = SlackMessenger(AsyncWebClient(token=settings.slack_bot_token))
    workflow = ArticleWorkflow(
        messenger=messenger,
        ticket_fetcher=ticket_fetcher,
        question_agent=QuestionAgent(),
        content_agent=ContentAgent(),
        image_agent=image_agent,
        publisher=publisher,
        store=store,
    )
    app = create_app(SlackEventRouter(workflow, messenger), settings, client=messenger.client)

    handler = AsyncSocketModeHandler(app, settings.slack_app_token)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await handler.connect_async()
    start_sweeper(store)
    logger.info(
        "bot_started",
        pid=os.getpid(),
        llm_provider=settings.llm_provider,
        feedback_strategy=settings.feedback_strategy,
        dry_run=settings.dry_run,
    )

    try:
        await stop.wait()
    finally:
        stop_sweeper()
        await handler.close_async()
        await ticket_fetcher.aclose()
        await publisher.aclose()
        await image_agent.aclose()
        logger.info("bot_stopped", active_conversations=len(store))


def run_bot(dry_run: bool) -> None:
    if dry_run:
        os.environ["DRY_RUN"] = "true"
    _configure()

    from config.settings import get_settings
    missing = get_settings().missing_required()
    if missing:
        print(f"ERROR: missing required settings: {', '.join(missing)}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(_run_bot())


def run_parse(text: str) -> None:
    from agents.ticket_reference import extract_ticket_key

    ticket_id = extract_ticket_key(text)
    if ticket_id is None:
        print("No Jira ticket reference found")
        sys.exit(1)
    print(ticket_id)


def main() -> None:
    parser = argparse.ArgumentParser(description="Slack KBA Bot")
    parser.add_argument(
        "--mode",
        choices=["bot", "parse"],
        default="bot",
        help="Run mode",
    )
    parser.add_argument("--text", help="Message text to parse (required for --mode parse)")
    parser.add_argument("--dry-run", action="store_true", help="Skip Confluence writes")

    args = parser.parse_args()

    if args.mode == "bot":
        run_bot(args.dry_run)
    elif args.mode == "parse":
        if args.text is None:
            print("ERROR: --text is required with --mode parse", file=sys.stderr)
            sys.exit(1)
        run_parse(args.text)


if __name__ == "__main__":
    main()
