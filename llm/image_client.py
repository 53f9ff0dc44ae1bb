from __future__ import annotations

from functools import lru_cache

from openai import AsyncOpenAI

from config.settings import settings


@lru_cache(maxsize=1)
def get_image_client() -> AsyncOpenAI:
    """
    Singleton async OpenAI client used for image rendering.

    Image generation goes to OpenAI regardless of LLM_PROVIDER; retries are
    left to the caller so a throttled render fails fast and the batch moves on.
    """
    if not settings.openai_api_key:
        raise ValueError(
            "Image rendering requires OPENAI_API_KEY. Add it to your .env file."
        )
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.http_timeout_seconds * 4,
        max_retries=0,
    )
