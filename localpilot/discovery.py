"""
Model discovery for local servers.

Discovery is best-effort: an unreachable server or a bad URL yields an
empty list, never an exception.
"""

import logging
from typing import Any, Optional

import httpx

from localpilot.config import DEFAULT_LMSTUDIO_BASE_URL, DEFAULT_OLLAMA_BASE_URL

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT_SECONDS = 10.0


def _parse_base_url(base_url: str) -> Optional[str]:
    """Validated base URL without a trailing slash; any path prefix is kept."""
    try:
        url = httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError):
        return None
    if url.scheme not in ("http", "https") or not url.host:
        return None
    return str(url).rstrip("/")


async def get_lmstudio_models(base_url: Optional[str] = None) -> list[dict[str, Any]]:
    """
    Model descriptors from LM Studio's native /api/v0/models endpoint.

    Each descriptor is returned as-is (id, type, state, max_context_length, ...).
    """
    url = _parse_base_url(base_url or DEFAULT_LMSTUDIO_BASE_URL)
    if url is None:
        logger.debug(f"Invalid LM Studio base URL: {base_url!r}")
        return []

    try:
        async with httpx.AsyncClient(timeout=DISCOVERY_TIMEOUT_SECONDS) as client:
            resp = await client.get(f"{url}/api/v0/models")
            resp.raise_for_status()
            data = resp.json()
    except Exception as e:
        logger.debug(f"Failed to list LM Studio models from {url}: {e}")
        return []

    models = data.get("data") if isinstance(data, dict) else None
    return [m for m in models or [] if isinstance(m, dict)]


async def get_ollama_models(base_url: Optional[str] = None) -> list[str]:
    """Model names from Ollama's /api/tags endpoint."""
    url = _parse_base_url(base_url or DEFAULT_OLLAMA_BASE_URL)
    if url is None:
        logger.debug(f"Invalid Ollama base URL: {base_url!r}")
        return []

    try:
        async with httpx.AsyncClient(timeout=DISCOVERY_TIMEOUT_SECONDS) as client:
            resp = await client.get(f"{url}/api/tags")
            resp.raise_for_status()
            data = resp.json()
    except Exception as e:
        logger.debug(f"Failed to list Ollama models from {url}: {e}")
        return []

    models = data.get("models") if isinstance(data, dict) else None
    return [m["name"] for m in models or [] if isinstance(m, dict) and m.get("name")]
