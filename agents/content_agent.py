from __future__ import annotations

from agents.base_agent import BaseAgent
from agents.question_agent import format_comments
from prompts.content_prompt import (
    CONTENT_HUMAN_TEMPLATE,
    CONTENT_SYSTEM,
    REFINE_HUMAN_TEMPLATE,
    REFINE_SYSTEM,
)
from schemas.article import ArticleContent
from schemas.ticket import TicketData


class ContentGenerationError(Exception):
    """The LLM did not produce usable article content."""


def _numbered(items: list[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def _normalise(content: ArticleContent) -> ArticleContent:
    """Renumber steps 1..n in the order the model returned them."""
    for i, step in enumerate(content.steps, 1):
        step.step_number = i
    content.tags = [t.strip() for t in content.tags if t and t.strip()]
    return content


class ContentAgent(BaseAgent):
    """Writes and refines knowledge base article content."""

    async def generate_content(
        self,
        ticket: TicketData,
        answers: list[str],
        run_id: str,
        questions: list[str] | None = None,
        feedback: list[str] | None = None,
    ) -> ArticleContent:
        """
        Answers are passed as one ordered block next to the questions rather
        than paired one-to-one: the requester may answer several questions in
        one message or split one answer across several.
        """
        human_prompt = CONTENT_HUMAN_TEMPLATE.format(
            ticket_id=ticket.ticket_id,
            title=ticket.title,
            issue_type=ticket.issue_type or "(not set)",
            priority=ticket.priority or "(not set)",
            status=ticket.status or "(not set)",
            resolution=ticket.resolution or "(unresolved)",
            description=ticket.description or "(empty)",
            comments=format_comments(ticket),
            questions=_numbered(questions or [], "(none asked)"),
            answers=_numbered(answers, "(none)"),
            feedback=_numbered(feedback or [], "(none)"),
        )

        try:
            result, _call_id = await self.invoke_llm_structured(
                system_prompt=CONTENT_SYSTEM,
                human_prompt=human_prompt,
                output_schema=ArticleContent,
                run_id=run_id,
                ticket_id=ticket.ticket_id,
                prompt_template_name="article_generation",
            )
        except Exception as exc:
            raise ContentGenerationError(str(exc)) from exc

        if result is None:
            raise ContentGenerationError("LLM returned no article content")

        content = _normalise(result)
        self.logger.info(
            "article_content_generated",
            ticket_id=ticket.ticket_id,
            run_id=run_id,
            steps=len(content.steps),
            image_steps=len(content.steps_with_images()),
        )
        return content

    async def refine_content(
        self,
        content: ArticleContent,
        feedback: str,
        run_id: str,
        ticket_id: str,
    ) -> ArticleContent:
        human_prompt = REFINE_HUMAN_TEMPLATE.format(
            article_json=content.model_dump_json(indent=2),
            feedback=feedback,
        )

        try:
            result, _call_id = await self.invoke_llm_structured(
                system_prompt=REFINE_SYSTEM,
                human_prompt=human_prompt,
                output_schema=ArticleContent,
                run_id=run_id,
                ticket_id=ticket_id,
                prompt_template_name="article_refinement",
            )
        except Exception as exc:
            raise ContentGenerationError(str(exc)) from exc

        if result is None:
            raise ContentGenerationError("LLM returned no refined article content")

        refined = _normalise(result)
        self.logger.info(
            "article_content_refined",
            ticket_id=ticket_id,
            run_id=run_id,
            steps=len(refined.steps),
        )
        return refined
