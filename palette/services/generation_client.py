"""
Image Generation Client

Thin HTTP client for the external image generation service. Callers that need
a hard deadline wrap ``generate_image`` with ``call_with_timeout``.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Protocol

import httpx

from palette.config import Config
from palette.services.prometheus_metrics import track_generation

logger = logging.getLogger(__name__)

GENERATION_CONNECT_TIMEOUT = 10.0


class GenerationError(Exception):
    """Raised when the generation backend fails or returns no image"""


class GenerationTimeoutError(GenerationError):
    """Raised when a generation call exceeds its deadline"""


class ImageGenerator(Protocol):
    def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> str | None: ...


class GenerationClient:
    """
    Sync client for the generation service.

    POST {GENERATION_SERVICE_URL} with ``{"prompt", "aspect_ratio"}`` and
    expects ``{"image_url": ...}`` back.
    """

    def __init__(
        self,
        service_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.service_url = service_url or Config.GENERATION_SERVICE_URL
        self.api_key = api_key or Config.GENERATION_SERVICE_KEY
        self.timeout_seconds = timeout_seconds or Config.GENERATION_TIMEOUT_SECONDS
        if not self.service_url:
            logger.warning("GENERATION_SERVICE_URL not configured")

    def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> str | None:
        """Generate one image and return its URL."""
        if not self.service_url:
            raise GenerationError("Generation service is not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with track_generation(), httpx.Client(
                timeout=httpx.Timeout(self.timeout_seconds, connect=GENERATION_CONNECT_TIMEOUT)
            ) as client:
                response = client.post(
                    self.service_url,
                    json={"prompt": prompt, "aspect_ratio": aspect_ratio},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise GenerationTimeoutError(f"Generation timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        return data.get("image_url") or data.get("url")


def call_with_timeout(func: Callable[..., Any], timeout_seconds: float, *args, **kwargs) -> Any:
    """
    Run ``func`` on its own worker thread and stop waiting after ``timeout_seconds``.

    A timed-out worker keeps running until the backend returns; its result is
    discarded. Each call gets a fresh worker so hung calls never queue others.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="generation")
    try:
        future = executor.submit(func, *args, **kwargs)
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as e:
        raise GenerationTimeoutError(
            f"Generation did not finish within {timeout_seconds:g}s"
        ) from e
    finally:
        executor.shutdown(wait=False)


_generation_client: GenerationClient | None = None


def get_generation_client() -> GenerationClient:
    global _generation_client
    if _generation_client is None:
        _generation_client = GenerationClient()
    return _generation_client
