from __future__ import annotations

from functools import lru_cache
from typing import Callable

from langchain_core.language_models import BaseChatModel

from config.settings import settings


def _build_openai() -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    if not settings.openai_api_key:
        raise ValueError(
            "LLM_PROVIDER=openai but OPENAI_API_KEY is not set. "
            "Add it to your .env file."
        )

    return ChatOpenAI(
        model=settings.openai_model_id,
        api_key=settings.openai_api_key,
        temperature=settings.openai_temperature,
        max_tokens=settings.openai_max_tokens,
        timeout=settings.http_timeout_seconds * 4,
        max_retries=2,
        streaming=False,
    )


def _build_bedrock() -> BaseChatModel:
    import boto3
    from botocore.config import Config
    from langchain_aws import ChatBedrock

    # .env credentials win over cached SSO sessions in ~/.aws/
    if settings.aws_profile:
        session = boto3.Session(profile_name=settings.aws_profile)
    elif settings.aws_access_key_id and settings.aws_secret_access_key:
        session = boto3.Session(
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_default_region,
        )
    else:
        session = boto3.Session()

    runtime = session.client(
        "bedrock-runtime",
        region_name=settings.aws_default_region,
        config=Config(read_timeout=int(settings.http_timeout_seconds * 4), retries={"max_attempts": 2}),
    )
    return ChatBedrock(
        model_id=settings.bedrock_model_id,
        client=runtime,
        model_kwargs={
            "temperature": settings.bedrock_temperature,
            "max_tokens": settings.bedrock_max_tokens,
            "anthropic_version": "bedrock-2023-05-31",
        },
        streaming=False,
    )


_PROVIDERS: dict[str, Callable[[], BaseChatModel]] = {
    "openai": _build_openai,
    "bedrock": _build_bedrock,
}


@lru_cache(maxsize=1)
def get_llm() -> BaseChatModel:
    """
    Chat model shared by the question and content agents.

    LLM_PROVIDER selects "openai" (default) or "bedrock". Streaming stays off
    because every call goes through with_structured_output().
    """
    provider = settings.llm_provider.lower().strip()
    try:
        builder = _PROVIDERS[provider]
    except KeyError:
        raise ValueError(
            f"Unknown LLM_PROVIDER {settings.llm_provider!r}; expected one of {sorted(_PROVIDERS)}"
        ) from None
    return builder()
