"""Shared HTTP client for object storage and direct API uploads.

Audio is always addressed by an opaque reference. A reference is either an
absolute URL or a key relative to STORAGE_BASE_URL.
"""

import logging
from typing import Optional

import httpx

from voicenotes.config import settings
from voicenotes.processing.errors import AudioValidationError, FileTooLargeError

logger = logging.getLogger(__name__)

# Singleton client instance
_client: Optional[httpx.AsyncClient] = None


async def get_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client.

    Uses connection pooling with:
    - max_connections=10: Allow concurrent downloads
    - max_keepalive_connections=5: Keep connections warm
    - keepalive_expiry=30s: Close idle connections after 30s
    """
    global _client

    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.DIRECT_UPLOAD_TIMEOUT,
                write=settings.DIRECT_UPLOAD_TIMEOUT,
                pool=10.0,
            ),
            limits=httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            ),
            follow_redirects=True,
        )
        logger.debug("Created new storage HTTP client with connection pooling")

    return _client


async def close_client() -> None:
    """Close the shared client (call on application shutdown)."""
    global _client

    if _client is not None and not _client.is_closed:
        await _client.aclose()
        _client = None
        logger.debug("Closed storage HTTP client")


def resolve_reference(reference: str) -> str:
    if reference.startswith(("http://", "https://")):
        return reference
    if not settings.STORAGE_BASE_URL:
        raise AudioValidationError(f"Cannot resolve audio reference without STORAGE_BASE_URL: {reference}")
    return f"{settings.STORAGE_BASE_URL.rstrip('/')}/{reference.lstrip('/')}"


async def fetch_bytes(reference: str) -> bytes:
    """Download the bytes behind an audio reference."""
    url = resolve_reference(reference)
    headers = {}
    if settings.STORAGE_API_KEY:
        headers["Authorization"] = f"Bearer {settings.STORAGE_API_KEY}"

    client = await get_client()
    response = await client.get(url, headers=headers)
    response.raise_for_status()

    data = response.content
    if not data:
        raise AudioValidationError(f"Audio file is empty: {reference}")
    if len(data) > settings.MAX_AUDIO_SIZE_MB * 1024 * 1024:
        raise FileTooLargeError(
            f"file_too_large: {len(data) / 1024 / 1024:.1f}MB exceeds {settings.MAX_AUDIO_SIZE_MB}MB"
        )
    logger.debug(f"Fetched {len(data)} bytes from storage")
    return data
