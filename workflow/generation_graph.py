from __future__ import annotations

from typing import Literal

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from agents.content_agent import ContentAgent
from agents.image_agent import ImageAgent
from app_logging.activity_logger import ActivityLogger
from schemas.conversation import FeedbackStrategy
from schemas.workflow_state import GenerationState

logger = ActivityLogger("generation_graph")


# ── Routing ────────────────────────────────────────────────────────────────────

def route_content(state: GenerationState) -> Literal["refine_content", "generate_content"]:
    """
    Refine the previous draft only for the refine strategy with a draft and
    feedback in hand; every other pass writes the article from scratch.
    """
    if (
        state.get("feedback_strategy") == FeedbackStrategy.REFINE
        and state.get("previous_content") is not None
        and state.get("feedback")
    ):
        return "refine_content"
    return "generate_content"


def route_after_content(state: GenerationState) -> Literal["render_images", "end"]:
    if state.get("should_stop") or state.get("content") is None:
        return "end"
    return "render_images"


def _configurable(config: RunnableConfig | None) -> dict:
    return (config or {}).get("configurable", {}) or {}


# ── Graph construction ─────────────────────────────────────────────────────────

def build_generation_graph(content_agent: ContentAgent, image_agent: ImageAgent):
    """
    Construct and compile the LangGraph for one generation pass.

    Topology:
        START ─┬─ (refine) → refine_content ─┐
               └─ (fresh)  → generate_content ┴─ (ok) → render_images → END
                                               └─ (failed) → END

    Callers may pass in config["configurable"]:
        progress:  async callable(text) for user-facing progress messages
        is_active: callable() -> bool; image rendering is skipped once False
    """

    async def generate_content_node(state: GenerationState) -> dict:
        answers = state.get("answers", [])
        try:
            content = await content_agent.generate_content(
                ticket=state["ticket"],
                answers=answers,
                run_id=state["run_id"],
                questions=state.get("questions", []) if answers else [],
                feedback=state.get("feedback", []),
            )
        except Exception as exc:
            logger.error("graph_node_failed", exc=exc, node="generate_content",
                         ticket_id=state.get("ticket_id"), run_id=state.get("run_id"))
            return {"should_stop": True, "errors": [f"generate_content: {exc}"]}
        return {"content": content}

    async def refine_content_node(state: GenerationState) -> dict:
        try:
            content = await content_agent.refine_content(
                content=state["previous_content"],
                feedback="\n\n".join(state.get("feedback", [])),
                run_id=state["run_id"],
                ticket_id=state["ticket_id"],
            )
        except Exception as exc:
            logger.error("graph_node_failed", exc=exc, node="refine_content",
                         ticket_id=state.get("ticket_id"), run_id=state.get("run_id"))
            return {"should_stop": True, "errors": [f"refine_content: {exc}"]}
        return {"content": content}

    async def render_images_node(state: GenerationState, config: RunnableConfig) -> dict:
        content = state["content"]
        options = _configurable(config)
        is_active = options.get("is_active")
        progress = options.get("progress")

        if is_active is not None and not is_active():
            logger.info("image_rendering_skipped", reason="conversation_inactive",
                        run_id=state.get("run_id"))
            return {"image_results": []}

        steps_with_images = content.steps_with_images()
        if not steps_with_images:
            return {"image_results": []}

        if progress is not None:
            await progress(
                f":art: Generating {len(steps_with_images)} screenshot mockup(s)... "
                "This may take a minute."
            )

        results = await image_agent.render_steps(
            content, run_id=state.get("run_id"), ticket_id=state.get("ticket_id")
        )
        return {"image_results": results}

    graph = StateGraph(GenerationState)

    graph.add_node("generate_content", generate_content_node)
    graph.add_node("refine_content", refine_content_node)
    graph.add_node("render_images", render_images_node)

    graph.add_conditional_edges(
        START,
        route_content,
        {
            "refine_content": "refine_content",
            "generate_content": "generate_content",
        },
    )
    for node in ("generate_content", "refine_content"):
        graph.add_conditional_edges(
            node,
            route_after_content,
            {"render_images": "render_images", "end": END},
        )
    graph.add_edge("render_images", END)

    return graph.compile()
