"""
Gemini client helpers shared by the embedding and consolidation services

- Client construction from GEMINI_API_KEY / LLM_API_KEY
- Retry on 429 / RESOURCE_EXHAUSTED, honouring Gemini's retryDelay hint
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional

from google import genai

from config import config, get_logger
from exceptions import ConfigurationError, RateLimitError

logger = get_logger(__name__).bind(component="gemini")

DEFAULT_MAX_RETRIES = 3


def create_client(api_key: Optional[str] = None) -> genai.Client:
    """Build a Gemini client

    Raises:
        ConfigurationError: If no API key is available
    """
    api_key = api_key or config.get_api_key()
    if not api_key:
        raise ConfigurationError(
            "API key required - set GEMINI_API_KEY or LLM_API_KEY environment variable",
            config_key="GEMINI_API_KEY",
        )
    return genai.Client(api_key=api_key)


def is_rate_limit_error(error: Exception) -> bool:
    error_str = str(error)
    return "429" in error_str or "RESOURCE_EXHAUSTED" in error_str


def retry_delay_seconds(error: Exception, attempt: int) -> int:
    """Delay before the next attempt

    Uses the retryDelay Gemini puts in 429 bodies, else 30s, 60s, 90s...
    """
    retry_match = re.search(r'"retryDelay":\s*"(\d+)s"', str(error))
    if retry_match:
        return int(retry_match.group(1)) + 1
    return 30 * (attempt + 1)


async def call_with_retry(
    call: Callable[[], Awaitable[Any]],
    service: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Any:
    """Await call(), retrying only on rate limits

    Non-rate-limit errors propagate immediately.

    Raises:
        RateLimitError: If every attempt was rate limited
    """
    last_error: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            return await call()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise

            last_error = e
            if attempt == max_retries - 1:
                break

            delay = retry_delay_seconds(e, attempt)
            logger.warning(
                "rate limited by gemini, waiting for retry",
                service=service,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

    raise RateLimitError(
        f"Max retries ({max_retries}) exceeded due to rate limiting: {last_error}",
        service=service,
    )
