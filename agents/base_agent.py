from __future__ import annotations

from typing import Any, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from llm.chat_client import get_llm
from llm.llm_logger import llm_logger
from app_logging.activity_logger import ActivityLogger


class BaseAgent:
    """
    Base class for the LLM-backed collaborators.

    Provides:
    - Standardised async LLM invocation via invoke_llm_structured()
    - Full LLM call logging (every call captured via llm_logger)
    - Activity event logging
    """

    def __init__(self, llm: Optional[BaseChatModel] = None) -> None:
        self.agent_name = self.__class__.__name__
        self.logger = ActivityLogger(self.agent_name)
        self._llm = llm

    # ── LLM ──────────────────────────────────────────────────────────────────

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_llm()
        return self._llm

    async def invoke_llm_structured(
        self,
        system_prompt: str,
        human_prompt: str,
        output_schema: type,
        run_id: str,
        ticket_id: str,
        prompt_template_name: str,
    ) -> tuple[Any, str]:
        """
        Invoke LLM with structured output (Pydantic schema via with_structured_output).
        Returns (parsed_result, call_id).

        Every invocation is logged to logs/llm_calls.jsonl.
        """
        llm_structured = self.llm.with_structured_output(output_schema, include_raw=False)

        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=human_prompt),
        ]

        parsed_output, record = await llm_logger.ainvoke_and_log(
            llm=llm_structured,
            messages=messages,
            run_id=run_id,
            ticket_id=ticket_id,
            agent_name=self.agent_name,
            prompt_template_name=prompt_template_name,
            output_schema_name=output_schema.__name__,
        )

        self.logger.info(
            "llm_call_completed",
            ticket_id=ticket_id,
            run_id=run_id,
            call_id=record.call_id,
            latency_ms=round(record.latency_ms, 1),
            tokens=record.total_token_count,
            parsed_ok=record.parsed_successfully,
        )

        return parsed_output, record.call_id
