"""OpenAI client factory with optional LangSmith tracing."""

import os

from openai import AsyncOpenAI

from botanicmd.config import get_settings


def get_openai_client(api_key: str | None = None, *, timeout: float = 60.0) -> AsyncOpenAI:
    """
    Create the AsyncOpenAI client used by the plant analyzer.

    The client is wrapped with LangSmith's ``wrap_openai`` when
    LANGCHAIN_TRACING_V2 is set in the environment (LangSmith reads its own
    configuration from there, not from Settings).

    Args:
        api_key: OpenAI API key. Defaults to settings.openai_api_key.
        timeout: Per-request timeout in seconds.
    """
    key = api_key or get_settings().openai_api_key

    # Retries are left to the user ("try again"); a silent SDK retry would
    # keep an abandoned attempt's call alive for longer.
    client = AsyncOpenAI(api_key=key, timeout=timeout, max_retries=0)

    if os.getenv("LANGCHAIN_TRACING_V2", "").lower() == "true":
        from langsmith.wrappers import wrap_openai

        client = wrap_openai(client)

    return client
