"""
Unit tests for the per-thread article workflow.

Collaborators (Jira, LLM agents, image rendering, Confluence) are mocked and
Slack is replaced with a recording messenger. The LangGraph generation pass
runs for real on top of the mocked agents.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.confluence_publisher import PublishError
from agents.content_agent import ContentGenerationError
from agents.ticket_fetcher import TicketFetchError, TicketNotFoundError
from schemas.article import (
    ArticleContent,
    ArticleStep,
    GeneratedImage,
    ImageRenderResult,
    Platform,
    PublishedPage,
)
from schemas.conversation import ConversationStage, FeedbackStrategy, ThreadKey
from schemas.ticket import TicketData
from slack_bot import blocks
from slack_bot.messenger import Messenger
from workflow.conversation import ArticleWorkflow
from workflow.store import ConversationStore

KEY = ThreadKey(channel_id="C1", thread_ts="1700000000.000100")
USER = "U42"
TICKET_URL_TEXT = "https://host/browse/TECH-456"

TICKET = TicketData(
    ticket_id="TECH-456",
    title="VPN disconnects after sleep",
    description="Users lose the VPN connection after waking the laptop.",
    status="Resolved",
    priority="High",
)

CONTENT = ArticleContent(
    title="Fix VPN after sleep",
    problem="VPN drops",
    solution="Reconnect",
    steps=[
        ArticleStep(step_number=1, description="Open the VPN client", image_prompt="VPN window", platform="both"),
        ArticleStep(step_number=2, description="Click reconnect", code_snippet="vpn reconnect"),
    ],
    tags=["vpn"],
)

MAC_IMAGE = GeneratedImage(step_number=1, platform=Platform.MAC, url="https://img/mac", prompt="p")
WIN_IMAGE = GeneratedImage(step_number=1, platform=Platform.WINDOWS, url="https://img/win", prompt="p")

PAGE = PublishedPage(page_id="98765", url="https://wiki/spaces/KB/pages/98765")


class RecordingMessenger(Messenger):
    def __init__(self) -> None:
        self.posts: list[SimpleNamespace] = []
        self.updates: list[SimpleNamespace] = []
        self.uploads: list[SimpleNamespace] = []

    async def post_message(self, channel, thread_ts, text, blocks=None) -> Optional[str]:
        self.posts.append(SimpleNamespace(channel=channel, thread_ts=thread_ts, text=text, blocks=blocks))
        return f"{len(self.posts)}.000"

    async def update_message(self, channel, ts, text, blocks=None) -> None:
        self.updates.append(SimpleNamespace(channel=channel, ts=ts, text=text, blocks=blocks))

    async def upload_file(self, channel, thread_ts, content, filename, title, initial_comment=None) -> None:
        self.uploads.append(SimpleNamespace(channel=channel, filename=filename, title=title, content=content))

    @property
    def texts(self) -> list[str]:
        return [p.text for p in self.posts]

    def review_posts(self) -> list[SimpleNamespace]:
        return [p for p in self.posts if p.blocks]

    def count(self, fragment: str) -> int:
        return sum(1 for t in self.texts if fragment in t)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _results(*images: GeneratedImage, failed: tuple = ()) -> list[ImageRenderResult]:
    results = [ImageRenderResult(step_number=i.step_number, platform=i.platform, image=i) for i in images]
    results += [ImageRenderResult(step_number=1, platform=p, error="rate limited") for p in failed]
    return results


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_workflow(clock):
    def factory(
        questions=("Which VPN client?", "Which OS?"),
        content=CONTENT,
        results=None,
        strategy=FeedbackStrategy.REFINE,
    ):
        messenger = RecordingMessenger()

        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=TICKET)
        fetcher.browse_url = MagicMock(side_effect=lambda key: f"https://host/browse/{key}")

        question_agent = MagicMock()
        question_agent.generate_questions = AsyncMock(return_value=list(questions))

        content_agent = MagicMock()
        content_agent.generate_content = AsyncMock(return_value=content)
        content_agent.refine_content = AsyncMock(return_value=content)

        image_agent = MagicMock()
        image_agent.render_steps = AsyncMock(
            return_value=results if results is not None else _results(MAC_IMAGE, WIN_IMAGE)
        )
        image_agent.download = AsyncMock(return_value=b"\x89PNG")

        publisher = MagicMock()
        publisher.publish = AsyncMock(return_value=PAGE)

        workflow = ArticleWorkflow(
            messenger=messenger,
            ticket_fetcher=fetcher,
            question_agent=question_agent,
            content_agent=content_agent,
            image_agent=image_agent,
            publisher=publisher,
            store=ConversationStore(clock=clock),
            feedback_strategy=strategy,
            grace_seconds=60,
        )
        return workflow, messenger

    return factory


async def _to_review(workflow: ArticleWorkflow) -> None:
    await workflow.start(KEY, USER, TICKET_URL_TEXT)
    for answer in ("AnyConnect", "macOS and Windows"):
        await workflow.submit_answer(KEY, answer)
    assert workflow.get_context(KEY).stage == ConversationStage.REVIEW


# ── Start ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_from_browse_url_asks_questions(make_workflow):
    workflow, messenger = make_workflow()

    ctx = await workflow.start(KEY, USER, TICKET_URL_TEXT)

    workflow.ticket_fetcher.fetch.assert_awaited_once_with("TECH-456")
    # Ticket has no comments; questions are still generated
    workflow.question_agent.generate_questions.assert_awaited_once()
    assert ctx.stage == ConversationStage.ASKING_QUESTIONS
    assert ctx.questions_asked == ["Which VPN client?", "Which OS?"]
    assert messenger.count("Found ticket: *TECH-456") == 1
    assert "1. Which VPN client?\n2. Which OS?" in messenger.texts[-1]
    assert all(p.thread_ts == KEY.thread_ts for p in messenger.posts)


@pytest.mark.asyncio
async def test_start_without_ticket_key_creates_no_state(make_workflow):
    workflow, messenger = make_workflow()

    assert await workflow.start(KEY, USER, "please write a KBA") is None

    assert workflow.get_context(KEY) is None
    assert "Could not extract a Jira ticket key" in messenger.texts[-1]
    workflow.ticket_fetcher.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_mention_without_ticket_shows_usage(make_workflow):
    workflow, messenger = make_workflow()

    await workflow.handle_mention(KEY, USER, "<@UBOT> hello")

    assert "mention me with a Jira ticket URL or key" in messenger.texts[-1]
    assert workflow.get_context(KEY) is None


@pytest.mark.asyncio
async def test_start_ticket_not_found_discards_context(make_workflow):
    workflow, messenger = make_workflow()
    workflow.ticket_fetcher.fetch.side_effect = TicketNotFoundError("TECH-456")

    assert await workflow.start(KEY, USER, TICKET_URL_TEXT) is None

    assert workflow.get_context(KEY) is None
    assert "Jira ticket TECH-456 not found" in messenger.texts[-1]
    workflow.question_agent.generate_questions.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_fetch_transport_error_discards_context(make_workflow):
    workflow, messenger = make_workflow()
    workflow.ticket_fetcher.fetch.side_effect = TicketFetchError("Failed to fetch Jira ticket: HTTP 503")

    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert workflow.get_context(KEY) is None
    assert "HTTP 503" in messenger.texts[-1]


@pytest.mark.asyncio
async def test_question_generation_failure_discards_context(make_workflow):
    workflow, messenger = make_workflow()
    workflow.question_agent.generate_questions.side_effect = RuntimeError("LLM unavailable")

    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert workflow.get_context(KEY) is None
    assert "LLM unavailable" in messenger.texts[-1]


@pytest.mark.asyncio
async def test_second_start_in_same_thread_is_ignored(make_workflow):
    workflow, _ = make_workflow()
    first = await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert await workflow.start(KEY, USER, "TECH-999") is None
    assert workflow.get_context(KEY) is first
    assert workflow.ticket_fetcher.fetch.await_count == 1


@pytest.mark.asyncio
async def test_zero_questions_generates_immediately(make_workflow):
    workflow, messenger = make_workflow(questions=())

    ctx = await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert ctx.stage == ConversationStage.REVIEW
    workflow.content_agent.generate_content.assert_awaited_once()
    assert messenger.count("I need some additional information") == 0
    assert messenger.count("question(s) remaining") == 0


# ── Answers ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_one_message_counts_as_one_answer(make_workflow):
    workflow, messenger = make_workflow()
    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    await workflow.handle_message(KEY, USER, "1. AnyConnect 2. macOS")

    ctx = workflow.get_context(KEY)
    assert ctx.answers == {"answer_1": "1. AnyConnect 2. macOS"}
    assert messenger.texts[-1] == blocks.remaining_questions(1)
    assert "1 more question(s) remaining" in messenger.texts[-1]
    workflow.content_agent.generate_content.assert_not_awaited()


@pytest.mark.parametrize("n", [1, 2, 4])
@pytest.mark.asyncio
async def test_exactly_n_answers_trigger_generation_once(make_workflow, n):
    questions = [f"Q{i}" for i in range(1, n + 1)]
    workflow, messenger = make_workflow(questions=questions)
    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    for i in range(1, n):
        await workflow.submit_answer(KEY, f"answer {i}")
        workflow.content_agent.generate_content.assert_not_awaited()

    await workflow.submit_answer(KEY, f"answer {n}")
    await workflow.submit_answer(KEY, "one more thing")

    workflow.content_agent.generate_content.assert_awaited_once()
    kwargs = workflow.content_agent.generate_content.call_args.kwargs
    assert kwargs["answers"] == [f"answer {i}" for i in range(1, n + 1)]
    assert kwargs["questions"] == questions
    assert len(workflow.get_context(KEY).answers) == n
    assert messenger.count("I have all the information I need") == 1


@pytest.mark.asyncio
async def test_concurrent_answers_are_serialised(make_workflow):
    workflow, _ = make_workflow()
    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    await asyncio.gather(*(workflow.submit_answer(KEY, f"answer {i}") for i in range(3)))

    workflow.content_agent.generate_content.assert_awaited_once()
    assert len(workflow.content_agent.generate_content.call_args.kwargs["answers"]) == 2
    assert workflow.get_context(KEY).stage == ConversationStage.REVIEW


@pytest.mark.asyncio
async def test_answer_without_conversation_is_ignored(make_workflow):
    workflow, messenger = make_workflow()

    await workflow.submit_answer(KEY, "stray text")
    await workflow.handle_message(KEY, USER, "just chatting")

    assert messenger.posts == []


@pytest.mark.asyncio
async def test_threads_are_independent(make_workflow):
    workflow, _ = make_workflow()
    other = ThreadKey(channel_id="C1", thread_ts="1700000000.000999")

    await workflow.start(KEY, USER, TICKET_URL_TEXT)
    await workflow.start(other, "U7", "TECH-777")
    await workflow.submit_answer(other, "reply for the other thread")

    assert workflow.get_context(KEY).answers == {}
    assert workflow.get_context(other).answers == {"answer_1": "reply for the other thread"}


# ── Generation / review ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_review_preview_uploads_images_and_offers_actions(make_workflow):
    workflow, messenger = make_workflow()

    await _to_review(workflow)

    ctx = workflow.get_context(KEY)
    assert [i.attachment_filename for i in ctx.draft.images] == ["step-1-mac.png", "step-1-windows.png"]
    assert [u.filename for u in messenger.uploads] == ["step-1-mac.png", "step-1-windows.png"]
    assert messenger.count("*KBA Preview*") == 1
    assert messenger.count("Generating 1 screenshot mockup(s)") == 1

    review = messenger.review_posts()[-1]
    action_ids = [e["action_id"] for e in review.blocks[1]["elements"]]
    assert action_ids == [blocks.APPROVE_ACTION_ID, blocks.REQUEST_CHANGES_ACTION_ID, blocks.CANCEL_ACTION_ID]
    assert {e["value"] for e in review.blocks[1]["elements"]} == {KEY.token}


@pytest.mark.asyncio
async def test_partial_image_failure_still_reaches_review(make_workflow):
    workflow, messenger = make_workflow(results=_results(MAC_IMAGE, failed=(Platform.WINDOWS,)))

    await _to_review(workflow)

    ctx = workflow.get_context(KEY)
    assert [i.attachment_filename for i in ctx.draft.images] == [MAC_IMAGE.attachment_filename]
    assert messenger.count("1 screenshot mockup(s) could not be generated") == 1
    assert messenger.review_posts()


@pytest.mark.asyncio
async def test_all_images_failing_still_reaches_review(make_workflow):
    workflow, _ = make_workflow(results=_results(failed=(Platform.MAC, Platform.WINDOWS)))

    await _to_review(workflow)

    assert workflow.get_context(KEY).draft.images == []


@pytest.mark.asyncio
async def test_preview_upload_failure_is_not_fatal(make_workflow):
    workflow, messenger = make_workflow()
    workflow.image_agent.download.side_effect = RuntimeError("expired url")

    await _to_review(workflow)

    assert messenger.uploads == []
    assert messenger.review_posts()


@pytest.mark.asyncio
async def test_content_failure_discards_context(make_workflow):
    workflow, messenger = make_workflow()
    workflow.content_agent.generate_content.side_effect = ContentGenerationError("model overloaded")

    await workflow.start(KEY, USER, TICKET_URL_TEXT)
    await workflow.submit_answer(KEY, "a1")
    await workflow.submit_answer(KEY, "a2")

    assert workflow.get_context(KEY) is None
    assert "Error generating KBA: model overloaded" in messenger.texts[-1]
    workflow.image_agent.render_steps.assert_not_awaited()


# ── Approve ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_approve_publishes_and_completes(make_workflow, clock):
    workflow, messenger = make_workflow()
    await _to_review(workflow)

    assert await workflow.approve(KEY, USER) is True

    workflow.publisher.publish.assert_awaited_once()
    args, kwargs = workflow.publisher.publish.call_args
    content, images, ticket_id = args
    assert (content, ticket_id) == (CONTENT, "TECH-456")
    assert [i.attachment_filename for i in images] == ["step-1-mac.png", "step-1-windows.png"]
    # Bytes fetched for the preview are handed to the publisher
    assert [i.data for i in images] == [b"\x89PNG", b"\x89PNG"]
    assert kwargs["page_id"] is None

    ctx = workflow.get_context(KEY)
    assert ctx.stage == ConversationStage.COMPLETE
    assert PAGE.url in messenger.texts[-1]
    assert "https://host/browse/TECH-456" in messenger.texts[-1]

    # Late messages during the grace window are ignored
    posts = len(messenger.posts)
    await workflow.handle_message(KEY, USER, "thanks!")
    assert len(messenger.posts) == posts

    clock.advance(61)
    assert workflow.get_context(KEY) is None


@pytest.mark.asyncio
async def test_approve_failure_keeps_review_and_retry_succeeds(make_workflow):
    workflow, messenger = make_workflow()
    workflow.publisher.publish.side_effect = [PublishError("Failed to create Confluence page: HTTP 500"), PAGE]
    await _to_review(workflow)
    reviews_before = len(messenger.review_posts())

    assert await workflow.approve(KEY, USER) is False

    ctx = workflow.get_context(KEY)
    assert ctx is not None
    assert ctx.stage == ConversationStage.REVIEW
    assert messenger.count("Error publishing to Confluence: Failed to create Confluence page: HTTP 500") == 1
    assert len(messenger.review_posts()) == reviews_before + 1

    assert await workflow.approve(KEY, USER) is True
    assert workflow.get_context(KEY).stage == ConversationStage.COMPLETE
    assert workflow.publisher.publish.await_count == 2
    workflow.content_agent.generate_content.assert_awaited_once()
    workflow.image_agent.render_steps.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_reports_images_missing_from_page(make_workflow):
    workflow, messenger = make_workflow()
    workflow.publisher.publish.return_value = PublishedPage(
        page_id="98765",
        url="https://wiki/spaces/KB/pages/98765",
        missing_attachments=["step-1-mac.png", "step-1-windows.png"],
    )
    await _to_review(workflow)

    assert await workflow.approve(KEY, USER) is True

    assert messenger.count("successfully published") == 1
    assert messenger.texts[-1] == (
        ":warning: 2 image(s) could not be attached to the page: step-1-mac.png, step-1-windows.png"
    )


@pytest.mark.asyncio
async def test_preview_download_failure_leaves_image_for_publisher(make_workflow):
    workflow, _ = make_workflow()
    workflow.image_agent.download.side_effect = [b"\x89PNG", RuntimeError("HTTP 403")]
    await _to_review(workflow)

    images = workflow.get_context(KEY).draft.images
    assert [i.attachment_filename for i in images] == ["step-1-mac.png", "step-1-windows.png"]
    assert [i.data for i in images] == [b"\x89PNG", None]


@pytest.mark.asyncio
async def test_approve_without_conversation(make_workflow):
    workflow, messenger = make_workflow()

    assert await workflow.approve(KEY, USER) is False
    assert "no longer active" in messenger.texts[-1]
    workflow.publisher.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_double_approve_publishes_once(make_workflow):
    workflow, _ = make_workflow()
    await _to_review(workflow)

    results = await asyncio.gather(workflow.approve(KEY, USER), workflow.approve(KEY, USER))

    assert sorted(results) == [False, True]
    workflow.publisher.publish.assert_awaited_once()


# ── Request changes ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_request_changes_refine_strategy(make_workflow):
    workflow, messenger = make_workflow(strategy=FeedbackStrategy.REFINE)
    await _to_review(workflow)

    assert await workflow.request_changes(KEY) is True
    ctx = workflow.get_context(KEY)
    assert ctx.stage == ConversationStage.ASKING_QUESTIONS
    assert ctx.answers == {}
    assert "describe what changes" in messenger.texts[-1]

    await workflow.handle_message(KEY, USER, "Add a Windows-only step")

    workflow.content_agent.refine_content.assert_awaited_once()
    kwargs = workflow.content_agent.refine_content.call_args.kwargs
    assert kwargs["content"] == CONTENT
    assert kwargs["feedback"] == "Add a Windows-only step"
    assert workflow.get_context(KEY).stage == ConversationStage.REVIEW


@pytest.mark.asyncio
async def test_request_changes_replace_strategy(make_workflow):
    workflow, _ = make_workflow(strategy=FeedbackStrategy.REPLACE)
    await _to_review(workflow)

    await workflow.request_changes(KEY)
    await workflow.submit_answer(KEY, "Focus on macOS only")

    assert workflow.content_agent.generate_content.await_count == 2
    kwargs = workflow.content_agent.generate_content.call_args.kwargs
    assert kwargs["answers"] == []
    assert kwargs["questions"] == []
    assert kwargs["feedback"] == ["Focus on macOS only"]
    workflow.content_agent.refine_content.assert_not_awaited()


@pytest.mark.asyncio
async def test_request_changes_merge_strategy(make_workflow):
    workflow, _ = make_workflow(strategy=FeedbackStrategy.MERGE)
    await _to_review(workflow)

    await workflow.request_changes(KEY)
    await workflow.submit_answer(KEY, "Mention the reboot")
    await workflow.request_changes(KEY)
    await workflow.submit_answer(KEY, "Shorter title")

    kwargs = workflow.content_agent.generate_content.call_args.kwargs
    assert kwargs["answers"] == ["AnyConnect", "macOS and Windows"]
    assert kwargs["feedback"] == ["Mention the reboot", "Shorter title"]


@pytest.mark.asyncio
async def test_request_changes_outside_review_is_ignored(make_workflow):
    workflow, _ = make_workflow()
    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert await workflow.request_changes(KEY) is False
    assert workflow.get_context(KEY).awaiting_feedback is False


# ── Cancel ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_then_new_message_starts_fresh(make_workflow):
    workflow, messenger = make_workflow()
    first = await workflow.start(KEY, USER, TICKET_URL_TEXT)

    assert await workflow.cancel(KEY) is True
    assert workflow.get_context(KEY) is None
    assert messenger.texts[-1] == ":x: KBA generation cancelled."

    await workflow.handle_message(KEY, USER, "TECH-456 again please")
    second = workflow.get_context(KEY)
    assert second is not None
    assert second.run_id != first.run_id
    assert second.stage == ConversationStage.ASKING_QUESTIONS


@pytest.mark.asyncio
async def test_cancel_in_review(make_workflow):
    workflow, _ = make_workflow()
    await _to_review(workflow)

    assert await workflow.cancel(KEY) is True
    assert workflow.get_context(KEY) is None

    # A stale approve click finds nothing to publish
    assert await workflow.approve(KEY, USER) is False
    workflow.publisher.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_after_complete_is_noop(make_workflow):
    workflow, _ = make_workflow()
    await _to_review(workflow)
    await workflow.approve(KEY, USER)

    assert await workflow.cancel(KEY) is False
    assert workflow.get_context(KEY).stage == ConversationStage.COMPLETE


@pytest.mark.asyncio
async def test_cancel_during_generation_drops_result(make_workflow):
    workflow, messenger = make_workflow()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_generate(**kwargs):
        started.set()
        await release.wait()
        return CONTENT

    workflow.content_agent.generate_content.side_effect = slow_generate
    await workflow.start(KEY, USER, TICKET_URL_TEXT)
    await workflow.submit_answer(KEY, "a1")

    task = asyncio.create_task(workflow.submit_answer(KEY, "a2"))
    await started.wait()

    # Cancel must not wait for the in-flight generation
    assert await workflow.cancel(KEY) is True
    release.set()
    await task

    assert workflow.get_context(KEY) is None
    assert messenger.texts[-1] == ":x: KBA generation cancelled."
    assert messenger.count("*KBA Preview*") == 0
    assert messenger.review_posts() == []
    workflow.image_agent.render_steps.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_during_publish_drops_result(make_workflow):
    workflow, messenger = make_workflow()
    await _to_review(workflow)
    release = asyncio.Event()

    async def slow_publish(*args, **kwargs):
        await release.wait()
        return PAGE

    workflow.publisher.publish.side_effect = slow_publish
    task = asyncio.create_task(workflow.approve(KEY, USER))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert await workflow.cancel(KEY) is True
    release.set()

    assert await task is False
    assert messenger.count("successfully published") == 0


@pytest.mark.asyncio
async def test_mention_in_active_thread_counts_as_answer(make_workflow):
    workflow, _ = make_workflow()
    await workflow.start(KEY, USER, TICKET_URL_TEXT)

    await workflow.handle_mention(KEY, USER, "<@UBOT> it's AnyConnect 5")

    assert workflow.get_context(KEY).answers == {"answer_1": "it's AnyConnect 5"}
