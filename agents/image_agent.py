from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from app_logging.activity_logger import ActivityLogger
from config.settings import settings
from llm.image_client import get_image_client
from prompts.image_prompt import build_image_prompt
from schemas.article import ArticleContent, GeneratedImage, ImageRenderResult, Platform


class ImageRenderError(Exception):
    """A single render request failed or returned no image."""


class ImageAgent:
    """
    Renders screenshot mockups for article steps.

    Renders run one at a time in step order with at least
    `pacing_seconds` between consecutive requests.
    """

    def __init__(
        self,
        client: Any = None,
        pacing_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.logger = ActivityLogger("ImageAgent")
        self._client = client
        self.pacing_seconds = (
            settings.image_pacing_seconds if pacing_seconds is None else pacing_seconds
        )
        self._sleep = sleep
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_image_client()
        return self._client

    async def render_image(self, prompt: str, platform: Platform, step_number: int) -> GeneratedImage:
        """Render one mockup. Raises ImageRenderError on any failure."""
        enhanced = build_image_prompt(prompt, platform)
        try:
            response = await self.client.images.generate(
                model=settings.openai_image_model,
                prompt=enhanced,
                n=1,
                size=settings.openai_image_size,
                quality=settings.openai_image_quality,
                style=settings.openai_image_style,
            )
        except Exception as exc:
            raise ImageRenderError(str(exc)) from exc

        data = getattr(response, "data", None) or []
        url = getattr(data[0], "url", None) if data else None
        if not url:
            raise ImageRenderError("image service returned no image URL")

        return GeneratedImage(step_number=step_number, platform=platform, url=url, prompt=enhanced)

    async def render_steps(
        self,
        content: ArticleContent,
        run_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
    ) -> list[ImageRenderResult]:
        """
        Render every (step, platform) pair that has an image prompt.

        Never raises for a failed render: each pair yields an
        ImageRenderResult carrying either the image or the failure reason.
        """
        results: list[ImageRenderResult] = []
        requests_made = 0

        for step in content.steps:
            if not step.image_prompt or step.platform is None:
                continue

            for platform in step.platform.targets():
                if requests_made:
                    await self._sleep(self.pacing_seconds)
                requests_made += 1

                try:
                    image = await self.render_image(step.image_prompt, platform, step.step_number)
                    results.append(
                        ImageRenderResult(step_number=step.step_number, platform=platform, image=image)
                    )
                except ImageRenderError as exc:
                    self.logger.warning(
                        "image_render_failed",
                        run_id=run_id,
                        ticket_id=ticket_id,
                        step_number=step.step_number,
                        platform=platform.value,
                        error_message=str(exc),
                    )
                    results.append(
                        ImageRenderResult(
                            step_number=step.step_number, platform=platform, error=str(exc)
                        )
                    )

        self.logger.info(
            "image_batch_rendered",
            run_id=run_id,
            ticket_id=ticket_id,
            requested=len(results),
            succeeded=sum(1 for r in results if r.succeeded),
        )
        return results

    async def download(self, url: str) -> bytes:
        """Fetch the rendered image bytes (image URLs are short-lived)."""
        response = await self._http.get(url)
        response.raise_for_status()
        return response.content

    async def aclose(self) -> None:
        await self._http.aclose()
