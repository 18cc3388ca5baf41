"""
backends.py — Text-generation backends.

Every backend does the same thing: system instruction + user content in,
free text out. The interesting part is error classification, which the
retry loop in extraction.py depends on:

  429 / 5xx / timeouts  -> BackendTransientError (retried)
  anything else         -> BackendFailure (fails immediately)

SDK exceptions never leak past this module.

The OpenAI client is created with max_retries=0. The SDK retries 2x by
default, which stacked on top of our own loop turned 3 attempts into 9
and made rate-limit storms worse.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from tender_analysis.config import LLMConfig, config
from tender_analysis.errors import BackendFailure, BackendTransientError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    text: str
    model: str = ""
    request_id: Optional[str] = None


class TextGenerationBackend(Protocol):
    name: str

    async def generate(
        self,
        system_prompt: str,
        content: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> BackendResponse:
        ...


class OpenAIBackend:
    """Chat Completions over openai.AsyncOpenAI."""

    name = "openai"

    def __init__(self, llm_config: Optional[LLMConfig] = None, client=None):
        self.settings = llm_config or config.llm
        if client is None:
            if not self.settings.api_key:
                raise ConfigurationError("OPENAI_API_KEY is not configured in the environment.")
            from openai import AsyncOpenAI

            client = AsyncOpenAI(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url,
                timeout=self.settings.request_timeout,
                max_retries=0,
            )
        self.client = client

    async def generate(
        self,
        system_prompt: str,
        content: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> BackendResponse:
        import openai

        kwargs = {
            "model": model or self.settings.model,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
        }
        limit = self.settings.max_tokens if max_tokens is None else max_tokens
        if limit:
            kwargs["max_tokens"] = limit

        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as exc:
            raise BackendTransientError(f"Request timed out: {exc}") from exc
        except openai.APIStatusError as exc:
            status = exc.status_code
            request_id = getattr(exc, "request_id", None)
            if status == 429 or status >= 500:
                raise BackendTransientError(str(exc), status, request_id) from exc
            raise BackendFailure(str(exc), status, request_id) from exc
        except openai.OpenAIError as exc:
            raise BackendFailure(f"{type(exc).__name__}: {exc}") from exc

        choices = completion.choices or []
        text = (choices[0].message.content or "") if choices else ""
        if not text.strip():
            finish = choices[0].finish_reason if choices else "no_choices"
            raise BackendFailure(
                f"Empty completion (finish_reason={finish})", request_id=completion.id
            )
        return BackendResponse(text=text, model=completion.model, request_id=completion.id)


# Loading a GGUF takes ~10s and ~4GB, so it happens once per process.
_llama_instance = None


def _get_llama(settings: LLMConfig):
    global _llama_instance
    if _llama_instance is not None:
        return _llama_instance

    try:
        from llama_cpp import Llama
    except ImportError as exc:
        raise ConfigurationError(
            "LLM_BACKEND=llama_cpp needs llama-cpp-python: pip install '.[local]'"
        ) from exc

    logger.info("Loading local model from: %s", settings.model_path)
    try:
        _llama_instance = Llama(
            model_path=settings.model_path,
            n_ctx=settings.n_ctx,
            n_threads=settings.n_threads or None,
            verbose=False,
        )
    except (ValueError, OSError) as exc:
        raise ConfigurationError(
            f"Failed to load local model '{settings.model_path}': {exc}"
        ) from exc
    logger.info("Local model loaded.")
    return _llama_instance


class LlamaCppBackend:
    """
    Local GGUF model via llama-cpp-python.

    Inference is CPU-bound and blocking, so it runs in a worker thread to
    keep the event loop (and the API) responsive. There is no rate-limit
    class of error locally, so every failure is final.
    """

    name = "llama_cpp"

    def __init__(self, llm_config: Optional[LLMConfig] = None, llama=None):
        self.settings = llm_config or config.llm
        self._llama = llama

    async def generate(
        self,
        system_prompt: str,
        content: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> BackendResponse:
        llama = self._llama or _get_llama(self.settings)
        # 0 (no limit) or anything past the context window: let llama.cpp
        # stop at n_ctx by itself.
        limit = self.settings.max_tokens if max_tokens is None else max_tokens
        if limit <= 0 or limit >= self.settings.n_ctx:
            limit = None

        def _run():
            return llama.create_chat_completion(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": content},
                ],
                temperature=self.settings.temperature if temperature is None else temperature,
                max_tokens=limit,
            )

        try:
            response = await asyncio.to_thread(_run)
        except (RuntimeError, ValueError, MemoryError) as exc:
            raise BackendFailure(f"Local generation failed: {exc}") from exc

        choices = response.get("choices") or []
        text = (choices[0].get("message", {}).get("content") or "") if choices else ""
        if not text.strip():
            raise BackendFailure("Local model returned an empty completion")
        return BackendResponse(
            text=text,
            model=response.get("model", self.settings.model_path),
            request_id=response.get("id"),
        )


def create_backend(llm_config: Optional[LLMConfig] = None) -> TextGenerationBackend:
    settings = llm_config or config.llm
    if settings.backend == "llama_cpp":
        return LlamaCppBackend(settings)
    return OpenAIBackend(settings)
