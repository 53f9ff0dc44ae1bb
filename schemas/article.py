from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from schemas.ticket import TicketData


class Platform(str, Enum):
    MAC = "mac"
    WINDOWS = "windows"
    BOTH = "both"

    def targets(self) -> list["Platform"]:
        """Concrete platforms an image is rendered for."""
        if self is Platform.BOTH:
            return [Platform.MAC, Platform.WINDOWS]
        return [self]

    @property
    def label(self) -> str:
        return {
            Platform.MAC: "macOS",
            Platform.WINDOWS: "Windows",
            Platform.BOTH: "macOS & Windows",
        }[self]


class ArticleStep(BaseModel):
    step_number: int
    description: str
    image_prompt: Optional[str] = Field(
        default=None,
        description=(
            "Detailed image-generation prompt for a UI mockup of this step. "
            "Only set when a screenshot would help."
        ),
    )
    platform: Optional[Platform] = Field(
        default=None,
        description="Operating system the screenshot shows: mac | windows | both",
    )
    code_snippet: Optional[str] = None


class ArticleContent(BaseModel):
    """Structured knowledge base article, as returned by the LLM."""

    title: str = Field(..., description="Clear, searchable article title")
    problem: str = Field(..., description="What issue users are experiencing")
    solution: str = Field(..., description="Overview of the resolution")
    steps: list[ArticleStep] = Field(default_factory=list)
    additional_notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    def steps_with_images(self) -> list[ArticleStep]:
        return [s for s in self.steps if s.image_prompt]


class GeneratedImage(BaseModel):
    step_number: int
    platform: Platform
    url: str
    prompt: str
    # Rendered bytes, fetched while the short-lived url still resolves
    data: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    @property
    def attachment_filename(self) -> str:
        """Shared by the page body markup and the uploaded attachment."""
        return attachment_filename(self.step_number, self.platform)


def attachment_filename(step_number: int, platform: Platform, ext: str = "png") -> str:
    return f"step-{step_number}-{platform.value}.{ext}"


class ImageRenderResult(BaseModel):
    """Outcome of a single (step, platform) render request."""

    step_number: int
    platform: Platform
    image: Optional[GeneratedImage] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.image is not None


class ArticleDraft(BaseModel):
    ticket: TicketData
    content: ArticleContent
    images: list[GeneratedImage] = Field(default_factory=list)
    page_id: Optional[str] = None


class PublishedPage(BaseModel):
    page_id: str
    url: str
    version: int = 1
    missing_attachments: list[str] = Field(default_factory=list)
