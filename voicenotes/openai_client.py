"""OpenAI API client for transcription and analysis.

One AsyncOpenAI client is shared by the transcription and analysis
orchestrators. SDK-level retries are disabled because retries, timeouts
and circuit breaking belong to the processing pipeline. The read timeout
is kept above the breaker's hard timeout.
"""

import logging
from typing import Optional

import httpx
from openai import AsyncOpenAI

from voicenotes.config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    """Get or create the shared OpenAI client."""
    global _client

    if _client is None:
        if not settings.OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY is required for note processing. "
                "Set it in environment variables."
            )
        _client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=httpx.Timeout(settings.CIRCUIT_TIMEOUT_MS / 1000 + 5, connect=10.0),
            max_retries=0,
        )
        logger.debug(f"Created OpenAI client for {settings.OPENAI_BASE_URL}")

    return _client


async def close_client() -> None:
    """Close the shared client (call on application shutdown)."""
    global _client

    if _client is not None:
        await _client.close()
        _client = None
        logger.debug("Closed OpenAI client")
