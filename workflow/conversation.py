from __future__ import annotations

import re
from typing import Optional

import structlog

from agents.confluence_publisher import ConfluencePublisher
from agents.content_agent import ContentAgent
from agents.image_agent import ImageAgent
from agents.question_agent import QuestionAgent
from agents.ticket_fetcher import TicketFetcher, TicketFetchError, TicketNotFoundError
from agents.ticket_reference import extract_ticket_key
from app_logging.activity_logger import ActivityLogger
from config.settings import settings
from schemas.article import ArticleDraft, GeneratedImage
from schemas.conversation import (
    ConversationContext,
    ConversationStage,
    FeedbackStrategy,
    ThreadKey,
)
from schemas.workflow_state import GenerationState
from slack_bot import blocks
from slack_bot.messenger import Messenger
from workflow.generation_graph import build_generation_graph
from workflow.store import ConversationStore

logger = ActivityLogger("workflow")

_MENTION = re.compile(r"<@[A-Z0-9]+>")


class ArticleWorkflow:
    """
    Per-thread state machine turning a Jira ticket into a published KBA.

        created → fetching → asking_questions → generating → review → publishing → complete
                                    ▲                           │
                                    └──── request changes ──────┘

    Any unrecovered fetch / generation error discards the conversation.
    A failed publish keeps it in review so approval can be retried.

    Transitions for one thread run under that thread's store lock. Cancel
    does not wait for the lock; transitions re-check `store.is_current()`
    after every collaborator call and drop results of a cancelled conversation.
    """

    def __init__(
        self,
        messenger: Messenger,
        ticket_fetcher: TicketFetcher,
        question_agent: QuestionAgent,
        content_agent: ContentAgent,
        image_agent: ImageAgent,
        publisher: ConfluencePublisher,
        store: Optional[ConversationStore] = None,
        feedback_strategy: Optional[FeedbackStrategy] = None,
        grace_seconds: Optional[float] = None,
    ) -> None:
        self.messenger = messenger
        self.ticket_fetcher = ticket_fetcher
        self.question_agent = question_agent
        self.content_agent = content_agent
        self.image_agent = image_agent
        self.publisher = publisher
        self.store = store or ConversationStore()
        self.feedback_strategy = feedback_strategy or FeedbackStrategy(settings.feedback_strategy)
        self.grace_seconds = (
            settings.conversation_grace_seconds if grace_seconds is None else grace_seconds
        )
        self._graph = build_generation_graph(content_agent, image_agent)

    # ── Inbound dispatch ──────────────────────────────────────────────────────

    async def handle_message(self, key: ThreadKey, user_id: str, text: str) -> None:
        """A plain message in a thread: an answer, a new request, or chatter."""
        if self.store.get(key) is not None:
            await self.submit_answer(key, text)
        elif extract_ticket_key(text):
            await self.start(key, user_id, text)

    async def handle_mention(self, key: ThreadKey, user_id: str, text: str) -> None:
        """A mention inside an active thread is a reply like any other message."""
        if self.store.get(key) is not None:
            await self.submit_answer(key, _strip_mentions(text))
        elif extract_ticket_key(text):
            await self.start(key, user_id, text)
        else:
            await self._say(key, blocks.usage_help(user_id))

    # ── Transitions ───────────────────────────────────────────────────────────

    async def start(self, key: ThreadKey, user_id: str, text: str) -> Optional[ConversationContext]:
        """Begin a conversation for the ticket referenced in `text`."""
        async with self.store.lock(key):
            if self.store.get(key) is not None:
                logger.info("conversation_already_active", thread=key.token)
                return None

            ticket_id = extract_ticket_key(text)
            if ticket_id is None:
                await self._say(
                    key,
                    ":x: Could not extract a Jira ticket key from your message. "
                    "Please provide a valid Jira ticket URL or key (e.g. PROJ-123).",
                )
                return None

            context = ConversationContext(key=key, initiating_user_id=user_id)
            self.store.add(context)
            context.stage = ConversationStage.FETCHING

            with structlog.contextvars.bound_contextvars(run_id=context.run_id, thread=key.token):
                logger.info("conversation_started", ticket_id=ticket_id, user_id=user_id)
                try:
                    await self._begin(context, ticket_id)
                except Exception as exc:
                    await self._abort(context, f":x: Error: {exc}", exc, "conversation_start_failed")
                    return None

            return context if self.store.is_current(context) else None

    async def _begin(self, context: ConversationContext, ticket_id: str) -> None:
        key = context.key
        await self._say(key, f"{blocks.greeting(context.initiating_user_id)}\n:mag: Analyzing Jira ticket...")

        try:
            ticket = await self.ticket_fetcher.fetch(ticket_id)
        except TicketNotFoundError as exc:
            await self._abort(context, f":x: {exc}. Please check the ticket key and try again.",
                              exc, "ticket_not_found")
            return
        except TicketFetchError as exc:
            await self._abort(context, f":x: Could not fetch {ticket_id} from Jira: {exc}",
                              exc, "ticket_fetch_failed")
            return

        if not self._still_active(context, "fetch"):
            return

        context.ticket = ticket
        await self._say(key, blocks.ticket_summary(ticket))

        context.stage = ConversationStage.ASKING_QUESTIONS
        try:
            questions = await self.question_agent.generate_questions(ticket, context.run_id)
        except Exception as exc:
            await self._abort(context, f":x: Error analyzing ticket: {exc}", exc, "question_generation_failed")
            return

        if not self._still_active(context, "questions"):
            return

        context.questions_asked = questions
        logger.info("questions_asked", ticket_id=ticket.ticket_id, count=len(questions))

        if not questions:
            await self._generate(context)
            return

        await self._say(key, blocks.question_list(questions))

    async def submit_answer(self, key: ThreadKey, text: str) -> None:
        """
        Record a reply while questions are outstanding.

        Replies outside the answering stage are unrelated thread chatter and
        are ignored. After "request changes" the next reply is the feedback.
        """
        async with self.store.lock(key):
            context = self.store.get(key)
            if context is None or context.stage != ConversationStage.ASKING_QUESTIONS:
                return

            with structlog.contextvars.bound_contextvars(run_id=context.run_id, thread=key.token):
                try:
                    await self._accept_reply(context, text)
                except Exception as exc:
                    await self._abort(context, f":x: Error: {exc}", exc, "answer_handling_failed")

    async def _accept_reply(self, context: ConversationContext, text: str) -> None:
        key = context.key

        if context.awaiting_feedback:
            context.feedback.append(text)
            context.awaiting_feedback = False
            logger.info("feedback_received", ticket_id=context.ticket_id,
                        strategy=self.feedback_strategy.value)
            await self._say(key, ":white_check_mark: Thanks! Updating the KBA with your feedback...")
            await self._generate(context)
            return

        if context.remaining_questions == 0:
            return

        slot = context.add_answer(text)
        remaining = context.remaining_questions
        logger.info("answer_recorded", ticket_id=context.ticket_id, slot=slot, remaining=remaining)

        if remaining == 0:
            await self._say(
                key,
                ":white_check_mark: Thank you! I have all the information I need.\n\n"
                ":robot_face: Generating KBA content...",
            )
            await self._generate(context)
        else:
            await self._say(key, blocks.remaining_questions(remaining))

    async def _generate(self, context: ConversationContext) -> None:
        """Content, then images, then review. Caller holds the thread lock."""
        key = context.key
        context.stage = ConversationStage.GENERATING
        await self._say(key, ":pencil: Generating KBA content...")

        state: GenerationState = {
            "run_id": context.run_id,
            "ticket_id": context.ticket_id or "",
            "ticket": context.ticket,
            "questions": list(context.questions_asked),
            "answers": context.ordered_answers(),
            "feedback": list(context.feedback),
            "feedback_strategy": self.feedback_strategy,
            "previous_content": context.draft.content if context.draft else None,
            "should_stop": False,
            "errors": [],
            "image_results": [],
        }

        async def progress(text: str) -> None:
            if self.store.is_current(context):
                await self._say(key, text)

        final_state = await self._graph.ainvoke(
            state,
            config={"configurable": {
                "progress": progress,
                "is_active": lambda: self.store.is_current(context),
            }},
        )

        if not self._still_active(context, "generation"):
            return

        if final_state.get("should_stop") or final_state.get("content") is None:
            reason = "; ".join(final_state.get("errors", [])) or "no content returned"
            await self._abort(context, f":x: Error generating KBA: {_strip_node(reason)}",
                              None, "generation_failed", errors=final_state.get("errors", []))
            return

        results = final_state.get("image_results", [])
        images = [r.image for r in results if r.succeeded]
        failed = [r for r in results if not r.succeeded]

        context.draft = ArticleDraft(
            ticket=context.ticket,
            content=final_state["content"],
            images=images,
            page_id=context.draft.page_id if context.draft else None,
        )
        context.stage = ConversationStage.REVIEW
        logger.info(
            "draft_ready",
            ticket_id=context.ticket_id,
            steps=len(context.draft.content.steps),
            images=len(images),
            failed_images=len(failed),
        )

        await self._show_preview(context)
        if failed:
            await self._say(
                key,
                f":warning: {len(failed)} screenshot mockup(s) could not be generated "
                "and were left out of the draft.",
            )
        await self._post_review_actions(context)

    async def approve(self, key: ThreadKey, user_id: Optional[str] = None) -> bool:
        """Publish the draft. Returns True once the page is published."""
        async with self.store.lock(key):
            context = self.store.get(key)
            if context is None:
                await self._say(
                    key,
                    ":hourglass: This KBA conversation is no longer active. "
                    "Mention me with the Jira ticket to start over.",
                )
                return False
            if context.stage != ConversationStage.REVIEW or context.draft is None:
                logger.info("approve_ignored", thread=key.token, stage=context.stage.value)
                return False

            with structlog.contextvars.bound_contextvars(run_id=context.run_id, thread=key.token):
                return await self._publish(context, user_id)

    async def _publish(self, context: ConversationContext, user_id: Optional[str]) -> bool:
        key = context.key
        draft = context.draft
        context.stage = ConversationStage.PUBLISHING
        logger.info("publish_started", ticket_id=context.ticket_id, approved_by=user_id)

        try:
            await self._say(key, ":rocket: Publishing KBA to Confluence...")
            page = await self.publisher.publish(
                draft.content,
                draft.images,
                draft.ticket.ticket_id,
                page_id=draft.page_id,
            )
        except Exception as exc:
            logger.error("publish_failed", exc=exc, ticket_id=context.ticket_id)
            if not self.store.is_current(context):
                return False
            # The attempt is rolled back; the draft stays reviewable.
            context.stage = ConversationStage.REVIEW
            await self._say(key, f":x: Error publishing to Confluence: {exc}")
            await self._post_review_actions(
                context,
                prompt=":warning: Publishing failed. The draft is unchanged; "
                       "press *Approve & Publish* to try again.",
            )
            return False

        if not self.store.is_current(context):
            logger.warning("publish_result_dropped", ticket_id=context.ticket_id, page_url=page.url)
            return False

        draft.page_id = page.page_id
        context.stage = ConversationStage.COMPLETE
        self.store.expire_after(context, self.grace_seconds)
        logger.info("publish_completed", ticket_id=context.ticket_id, page_id=page.page_id, page_url=page.url)

        await self._say(
            key,
            ":white_check_mark: *KBA successfully published!*\n\n"
            f"View it here: {page.url}\n\n"
            f"Jira Ticket: {self.ticket_fetcher.browse_url(draft.ticket.ticket_id)}",
        )
        if page.missing_attachments:
            await self._say(
                key,
                f":warning: {len(page.missing_attachments)} image(s) could not be attached "
                f"to the page: {', '.join(page.missing_attachments)}",
            )
        return True

    async def request_changes(self, key: ThreadKey) -> bool:
        """review → asking_questions; the next reply in the thread is feedback."""
        async with self.store.lock(key):
            context = self.store.get(key)
            if context is None or context.stage != ConversationStage.REVIEW:
                return False

            if self.feedback_strategy in (FeedbackStrategy.REFINE, FeedbackStrategy.REPLACE):
                context.answers = {}
                context.feedback = []

            context.stage = ConversationStage.ASKING_QUESTIONS
            context.awaiting_feedback = True
            logger.info("changes_requested", run_id=context.run_id, ticket_id=context.ticket_id,
                        strategy=self.feedback_strategy.value)

            await self._say(key, ":pencil: Please describe what changes you'd like me to make to the KBA.")
            return True

    async def cancel(self, key: ThreadKey) -> bool:
        """Discard the conversation right away, without waiting for in-flight work."""
        context = self.store.get(key)
        if context is None or context.stage == ConversationStage.COMPLETE:
            return False

        self.store.discard(key, context)
        logger.info("conversation_cancelled", run_id=context.run_id, ticket_id=context.ticket_id,
                    stage=context.stage.value)
        await self._say(key, ":x: KBA generation cancelled.")
        return True

    def get_context(self, key: ThreadKey) -> Optional[ConversationContext]:
        return self.store.get(key)

    # ── Presentation ──────────────────────────────────────────────────────────

    async def _show_preview(self, context: ConversationContext) -> None:
        key = context.key
        draft = context.draft
        await self._say(key, blocks.preview_text(draft.content, draft.images))

        kept: list[GeneratedImage] = []
        for image in draft.images:
            try:
                data = await self.image_agent.download(image.url)
                image = image.model_copy(update={"data": data})
                await self.messenger.upload_file(
                    key.channel_id,
                    key.thread_ts,
                    content=data,
                    filename=image.attachment_filename,
                    title=blocks.image_title(image),
                    initial_comment=blocks.image_comment(image),
                )
            except Exception as exc:
                logger.warning(
                    "image_preview_upload_failed",
                    run_id=context.run_id,
                    step_number=image.step_number,
                    platform=image.platform.value,
                    error_message=str(exc),
                )
            kept.append(image)
        # Publishing uploads these bytes; the render urls may be gone by then
        draft.images = kept

    async def _post_review_actions(
        self, context: ConversationContext, prompt: str = blocks.REVIEW_PROMPT
    ) -> None:
        await self.messenger.post_message(
            context.key.channel_id,
            context.key.thread_ts,
            text=prompt.replace("*", ""),
            blocks=blocks.review_blocks(context.key.token, prompt),
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _say(self, key: ThreadKey, text: str) -> None:
        await self.messenger.post_message(key.channel_id, key.thread_ts, text)

    def _still_active(self, context: ConversationContext, after: str) -> bool:
        if self.store.is_current(context):
            return True
        logger.info("result_dropped_for_inactive_conversation", run_id=context.run_id,
                    ticket_id=context.ticket_id, after=after)
        return False

    async def _abort(
        self,
        context: ConversationContext,
        text: str,
        exc: Optional[BaseException],
        event: str,
        **fields,
    ) -> None:
        """Report a fatal error and discard the conversation."""
        logger.error(event, exc=exc, run_id=context.run_id, ticket_id=context.ticket_id,
                     stage=context.stage.value, **fields)
        if not self.store.discard(context.key, context):
            return
        try:
            await self._say(context.key, text)
        except Exception as post_exc:
            logger.error("error_report_failed", exc=post_exc, run_id=context.run_id)


def _strip_node(reason: str) -> str:
    """'generate_content: boom' -> 'boom' for user-facing messages."""
    _, sep, rest = reason.partition(": ")
    return rest if sep else reason


def _strip_mentions(text: str) -> str:
    return _MENTION.sub("", text).strip()
