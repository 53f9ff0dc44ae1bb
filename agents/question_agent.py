from __future__ import annotations

from agents.base_agent import BaseAgent
from prompts.questions_prompt import QUESTIONS_HUMAN_TEMPLATE, QUESTIONS_SYSTEM
from schemas.questions import ClarifyingQuestions
from schemas.ticket import TicketData


def format_comments(ticket: TicketData) -> str:
    if not ticket.comments:
        return "(none)"
    return "\n".join(f"- {c.author}: {c.body}" for c in ticket.comments)


class QuestionAgent(BaseAgent):
    """Decides which clarifying questions to ask before writing an article."""

    async def generate_questions(self, ticket: TicketData, run_id: str) -> list[str]:
        human_prompt = QUESTIONS_HUMAN_TEMPLATE.format(
            ticket_id=ticket.ticket_id,
            title=ticket.title,
            issue_type=ticket.issue_type or "(not set)",
            priority=ticket.priority or "(not set)",
            status=ticket.status or "(not set)",
            description=ticket.description or "(empty)",
            comments=format_comments(ticket),
        )

        result, _call_id = await self.invoke_llm_structured(
            system_prompt=QUESTIONS_SYSTEM,
            human_prompt=human_prompt,
            output_schema=ClarifyingQuestions,
            run_id=run_id,
            ticket_id=ticket.ticket_id,
            prompt_template_name="clarifying_questions",
        )

        if result is None:
            raise ValueError("LLM returned None for ClarifyingQuestions")

        questions = [q.strip() for q in result.questions if q and q.strip()]

        self.logger.info(
            "clarifying_questions_generated",
            ticket_id=ticket.ticket_id,
            run_id=run_id,
            question_count=len(questions),
        )
        return questions
