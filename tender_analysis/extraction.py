"""
extraction.py — Backend calls with retry, backoff and request logging.

One ExtractionClient.generate() call is one logical request: up to
max_attempts tries, sleeping retry_base_delay * retry_multiplier**n between
them (200ms, 600ms with the defaults). Only BackendTransientError
(rate-limit, 5xx, timeout) is retried; a 400 or 401 will not get better
by asking again, so those fail on the spot.

Every attempt logs a start line and an ok/error line with the attempt
number, backend request id and latency. When a window goes missing from a
merged record, these lines are how you find out why.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tender_analysis.backends import BackendResponse, TextGenerationBackend
from tender_analysis.config import LLMConfig, config
from tender_analysis.errors import BackendFailure, BackendTransientError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ExtractionClient:
    """
    Wraps a TextGenerationBackend with the retry policy.

    `sleep` is injectable so tests can record backoff delays without
    actually waiting.
    """

    def __init__(
        self,
        backend: TextGenerationBackend,
        llm_config: Optional[LLMConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.backend = backend
        self.settings = llm_config or config.llm
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return self.settings.retry_base_delay * (self.settings.retry_multiplier ** (attempt - 1))

    async def generate(
        self,
        system_prompt: str,
        content: str,
        *,
        label: str = "document",
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Send one request; return the backend's text.

        Raises:
            BackendFailure: non-retryable error, or every attempt hit a
                transient one.
        """
        max_attempts = self.settings.max_attempts
        backend_name = getattr(self.backend, "name", type(self.backend).__name__)
        last_error: Optional[BackendTransientError] = None

        for attempt in range(1, max_attempts + 1):
            logger.info(
                "LLM request start | target=%s | attempt=%d/%d | backend=%s | model=%s | chars=%d",
                label, attempt, max_attempts, backend_name,
                model or self.settings.model, len(content),
            )
            t0 = time.perf_counter()
            try:
                response: BackendResponse = await self.backend.generate(
                    system_prompt,
                    content,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except BackendTransientError as exc:
                last_error = exc
                latency_ms = int((time.perf_counter() - t0) * 1000)
                if attempt == max_attempts:
                    logger.error(
                        "LLM request error | target=%s | attempt=%d/%d | status=%s | "
                        "request_id=%s | latency_ms=%d | retries exhausted | err=%s",
                        label, attempt, max_attempts, exc.status_code,
                        exc.request_id, latency_ms, exc,
                    )
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "LLM request error | target=%s | attempt=%d/%d | status=%s | "
                    "request_id=%s | latency_ms=%d | retrying in %.1fs | err=%s",
                    label, attempt, max_attempts, exc.status_code,
                    exc.request_id, latency_ms, delay, exc,
                )
                await self._sleep(delay)
                continue
            except BackendFailure as exc:
                logger.error(
                    "LLM request error | target=%s | attempt=%d/%d | status=%s | "
                    "request_id=%s | latency_ms=%d | not retryable | err=%s",
                    label, attempt, max_attempts, exc.status_code, exc.request_id,
                    int((time.perf_counter() - t0) * 1000), exc,
                )
                raise

            logger.info(
                "LLM request ok | target=%s | attempt=%d/%d | model=%s | request_id=%s | "
                "latency_ms=%d | out_chars=%d",
                label, attempt, max_attempts, response.model, response.request_id,
                int((time.perf_counter() - t0) * 1000), len(response.text),
            )
            return response.text

        raise BackendFailure(
            f"Backend call for {label} failed after {max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            request_id=last_error.request_id if last_error else None,
        )
