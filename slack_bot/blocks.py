"""Slack message texts and Block Kit payloads used by the article workflow."""

from __future__ import annotations

from schemas.article import ArticleContent, GeneratedImage
from schemas.ticket import TicketData

APPROVE_ACTION_ID = "approve_article"
REQUEST_CHANGES_ACTION_ID = "request_changes"
CANCEL_ACTION_ID = "cancel_article"

REVIEW_PROMPT = ":white_check_mark: *KBA generated!* Please review the content and images above."


def greeting(user_id: str) -> str:
    return f":wave: Hi <@{user_id}>! I'll help you create a KBA from this Jira ticket."


def usage_help(user_id: str) -> str:
    return (
        f":wave: Hi <@{user_id}>! To create a KBA, mention me with a Jira ticket URL or key.\n\n"
        "Example: `@KBA Bot https://your-org.atlassian.net/browse/PROJ-123`"
    )


def ticket_summary(ticket: TicketData) -> str:
    return (
        f":white_check_mark: Found ticket: *{ticket.ticket_id} - {ticket.title}*\n\n"
        f"Status: {ticket.status or 'n/a'}\n"
        f"Priority: {ticket.priority or 'n/a'}\n\n"
        ":brain: Analyzing ticket to determine what additional information is needed..."
    )


def question_list(questions: list[str]) -> str:
    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, 1))
    return (
        ":question: I need some additional information to create a comprehensive KBA:\n\n"
        f"{numbered}\n\n"
        "Please answer these questions (you can answer them in one message or separately)."
    )


def remaining_questions(remaining: int) -> str:
    return f":white_check_mark: Got it! {remaining} more question(s) remaining."


def preview_text(content: ArticleContent, images: list[GeneratedImage]) -> str:
    lines = [
        ":page_facing_up: *KBA Preview*",
        "",
        f"*Title:* {content.title}",
        "",
        f"*Problem:*\n{content.problem}",
        "",
        f"*Solution:*\n{content.solution}",
        "",
        "*Steps:*",
    ]
    for step in content.steps:
        lines.append(f"{step.step_number}. {step.description}")
        if step.code_snippet:
            lines.append(f"```\n{step.code_snippet}\n```")

    if content.additional_notes:
        lines.extend(["", f"*Additional Notes:*\n{content.additional_notes}"])

    lines.extend([
        "",
        f"*Tags:* {', '.join(content.tags) or '(none)'}",
        "",
        f"*Generated Images:* {len(images)} screenshot mockup(s)",
    ])
    return "\n".join(lines)


def image_title(image: GeneratedImage) -> str:
    return f"Step {image.step_number} - {image.platform.label}"


def image_comment(image: GeneratedImage) -> str:
    return f"Screenshot mockup for Step {image.step_number} ({image.platform.value})"


def review_blocks(token: str, prompt: str = REVIEW_PROMPT) -> list[dict]:
    """Approve / request changes / cancel buttons; each carries the thread token."""
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": prompt},
        },
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Approve & Publish"},
                    "style": "primary",
                    "action_id": APPROVE_ACTION_ID,
                    "value": token,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Request Changes"},
                    "action_id": REQUEST_CHANGES_ACTION_ID,
                    "value": token,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Cancel"},
                    "style": "danger",
                    "action_id": CANCEL_ACTION_ID,
                    "value": token,
                },
            ],
        },
    ]


def status_blocks(text: str) -> list[dict]:
    """Replaces the review buttons once one of them was clicked."""
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]
