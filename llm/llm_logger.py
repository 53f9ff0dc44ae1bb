from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from config.settings import settings
from app_logging.activity_logger import ActivityLogger

_activity = ActivityLogger("llm_logger")


class LLMCallRecord(BaseModel):
    """Pydantic schema for a single LLM invocation log entry."""

    call_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    ticket_id: str
    agent_name: str

    # Request
    model_id: str
    prompt_template_name: str
    system_prompt: Optional[str] = None
    human_prompt: str
    prompt_token_count: Optional[int] = None

    # Response
    raw_response: str = ""
    parsed_successfully: bool = False
    completion_token_count: Optional[int] = None
    total_token_count: Optional[int] = None

    # Performance
    latency_ms: float = 0.0
    invoked_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    # LLM metadata
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    # Structured output
    output_schema_name: Optional[str] = None
    structured_output: Optional[dict] = None

    # Error
    error_occurred: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class LLMLogger:
    """
    Logs every LLM invocation to a JSONL file.
    Usage:
        result, record = await llm_logger.ainvoke_and_log(llm, messages, ...)
    """

    _lock = threading.Lock()

    def __init__(self) -> None:
        self._log_path = Path(settings.llm_log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    # ── Core log method ───────────────────────────────────────────────────────

    def log_call(self, record: LLMCallRecord) -> str:
        """Append record to the JSONL file. Returns call_id."""
        try:
            with self._lock:
                with open(self._log_path, "a", encoding="utf-8") as f:
                    f.write(record.model_dump_json() + "\n")
        except OSError as exc:
            # The audit log must never break a conversation
            _activity.warning(
                "llm_log_write_failed",
                call_id=record.call_id,
                error_message=str(exc),
            )
        return record.call_id

    # ── Convenience wrapper used by all agents ────────────────────────────────

    async def ainvoke_and_log(
        self,
        llm: Any,
        messages: list,
        run_id: str,
        ticket_id: str,
        agent_name: str,
        prompt_template_name: str,
        output_schema_name: Optional[str] = None,
    ) -> tuple[Any, LLMCallRecord]:
        """
        Invoke the LLM, capture all metadata, log the result.
        Returns (parsed_output, record). Invocation errors are logged first
        and then re-raised to the calling agent.
        """
        start = time.monotonic()
        failure: Optional[Exception] = None
        parsed_output: Any = None
        raw_response = ""
        prompt_tokens: Optional[int] = None
        completion_tokens: Optional[int] = None
        total_tokens: Optional[int] = None

        try:
            response = await llm.ainvoke(messages)
            parsed_output = response

            raw_response = (
                str(response.content)
                if hasattr(response, "content")
                else (response.model_dump_json() if hasattr(response, "model_dump_json") else str(response))
            )

            usage = getattr(response, "usage_metadata", None)
            if isinstance(usage, dict):
                prompt_tokens = usage.get("input_tokens")
                completion_tokens = usage.get("output_tokens")
                total_tokens = usage.get("total_tokens")

        except Exception as exc:
            failure = exc

        latency_ms = (time.monotonic() - start) * 1000

        human_prompt_text = ""
        system_prompt_text = None
        for m in messages or []:
            if isinstance(m, HumanMessage):
                human_prompt_text = str(m.content)
            elif isinstance(m, SystemMessage):
                system_prompt_text = str(m.content)

        record = LLMCallRecord(
            run_id=run_id,
            ticket_id=ticket_id,
            agent_name=agent_name,
            model_id=settings.llm_model_id,
            prompt_template_name=prompt_template_name,
            system_prompt=system_prompt_text,
            human_prompt=human_prompt_text,
            raw_response=raw_response,
            parsed_successfully=failure is None and parsed_output is not None,
            prompt_token_count=prompt_tokens,
            completion_token_count=completion_tokens,
            total_token_count=total_tokens,
            latency_ms=latency_ms,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            output_schema_name=output_schema_name,
            structured_output=(
                parsed_output.model_dump(mode="json")
                if parsed_output is not None and hasattr(parsed_output, "model_dump")
                else None
            ),
            error_occurred=failure is not None,
            error_type=type(failure).__name__ if failure else None,
            error_message=str(failure) if failure else None,
        )

        self.log_call(record)
        if failure is not None:
            raise failure
        return parsed_output, record


# Module-level singleton
llm_logger = LLMLogger()
