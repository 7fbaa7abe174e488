"""
Wellness analysis via a vision-capable LLM through LiteLLM.

LiteLLM provides a unified interface for 100+ LLM providers using the same
OpenAI-compatible API call. Switching providers requires only changing the
model string:

    "openai/gpt-4o"                 →  OpenAI GPT-4o
    "anthropic/claude-sonnet-4-5"   →  Anthropic Claude
    "gemini/gemini-1.5-pro"         →  Google Gemini

The image travels inline as a base64 data URI, so stored images never need
to be publicly reachable by the provider.

Two modes funnel into the same parse path:
  batch        one request, one response body
  incremental  `stream=True`; chunks are concatenated, and progress is
               reported every N chunks so viewers see movement

Every failure leaves this module as an `UpstreamError` subclass.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.core.config import Settings
from app.core.errors import (
    MalformedResponseError,
    UpstreamError,
    UpstreamQuotaExceededError,
    UpstreamRateLimitedError,
    UpstreamUnknownError,
)
from app.schemas.prompts import PromptConfig
from app.services.json_repair import parse_model_json

logger = logging.getLogger(__name__)

_JSON_ESCAPING_REMINDER = (
    "\n\nIMPORTANT: Ensure all JSON strings are properly escaped. "
    'Use \\" for quotes inside strings, \\n for newlines.'
)

# Streaming progress is an estimate: ~100 chunks is a typical full answer.
_EXPECTED_CHUNKS = 100
_MAX_REPORTED_PROGRESS = 95.0

ProgressCallback = Callable[[float], Awaitable[None]]


@dataclass
class InferenceResult:
    data: dict[str, Any]
    model_used: str
    raw_text: str
    chunks: int = 0
    elapsed_ms: int = 0


class InferenceClient:
    def __init__(
        self,
        settings: Settings,
        completion: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self.model = settings.llm_default_model
        self.stream = settings.llm_stream
        self.timeout_seconds = settings.llm_timeout_seconds
        self.progress_every = max(settings.llm_progress_every_chunks, 1)
        self._completion = completion

    def _get_completion(self) -> Callable[..., Awaitable[Any]]:
        if self._completion is None:
            try:
                from litellm import acompletion  # type: ignore
            except ImportError as exc:
                raise ImportError(
                    "litellm is not installed. Add `litellm` to the dependencies."
                ) from exc
            self._completion = acompletion
        return self._completion

    async def analyse(
        self,
        image: bytes,
        content_type: str,
        prompt: PromptConfig,
        on_progress: ProgressCallback | None = None,
    ) -> InferenceResult:
        """
        Send the image to the model and return the parsed JSON object.

        Raises:
            MalformedResponseError: output unparseable even after repair.
            UpstreamRateLimitedError / UpstreamQuotaExceededError: provider refused.
            UpstreamUnknownError: timeout, network, or any other provider failure.
        """
        t0 = time.monotonic()
        try:
            raw_text, model_used, chunks = await asyncio.wait_for(
                self._call(image, content_type, prompt, on_progress),
                timeout=self.timeout_seconds,
            )
        except UpstreamError:
            raise
        except asyncio.TimeoutError as exc:
            raise UpstreamUnknownError(
                f"No response from {self.model} within {self.timeout_seconds:g}s."
            ) from exc
        except Exception as exc:
            raise map_provider_error(exc) from exc

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "LLM analysis complete | model=%s chars=%d chunks=%d ms=%d",
            model_used, len(raw_text), chunks, elapsed_ms,
        )

        data = parse_model_json(raw_text)
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(data).__name__}."
            )
        return InferenceResult(
            data=data,
            model_used=model_used,
            raw_text=raw_text,
            chunks=chunks,
            elapsed_ms=elapsed_ms,
        )

    async def _call(
        self,
        image: bytes,
        content_type: str,
        prompt: PromptConfig,
        on_progress: ProgressCallback | None,
    ) -> tuple[str, str, int]:
        acompletion = self._get_completion()
        data_uri = f"data:{content_type};base64,{base64.b64encode(image).decode('ascii')}"

        response = await acompletion(
            model=self.model,
            messages=[
                {"role": "system", "content": prompt.system_prompt + _JSON_ESCAPING_REMINDER},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt.analysis_prompt},
                        {"type": "image_url", "image_url": {"url": data_uri}},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            max_tokens=prompt.max_tokens,
            temperature=prompt.temperature,
            stream=self.stream,
        )

        if not self.stream:
            raw_text = response.choices[0].message.content or ""
            return raw_text, getattr(response, "model", None) or self.model, 0

        parts: list[str] = []
        chunks = 0
        model_used = self.model
        async for chunk in response:
            model_used = getattr(chunk, "model", None) or model_used
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content or ""
            if not content:
                continue
            parts.append(content)
            chunks += 1
            if on_progress is not None and chunks % self.progress_every == 0:
                await on_progress(
                    min(chunks / _EXPECTED_CHUNKS * 100, _MAX_REPORTED_PROGRESS)
                )
        return "".join(parts), model_used, chunks


def map_provider_error(exc: Exception) -> UpstreamError:
    """
    Translate a provider exception into the upstream error taxonomy.

    LiteLLM normalises provider errors to OpenAI-style exceptions carrying
    `status_code`; quota exhaustion arrives as a 429 whose message or code
    mentions the quota, or as a 402 from some providers.
    """
    status_code = getattr(exc, "status_code", None)
    text = f"{getattr(exc, 'code', '') or ''} {exc}".lower()
    detail = f"{type(exc).__name__}: {exc}"

    if status_code == 402 or (
        status_code == 429 and ("quota" in text or "billing" in text)
    ):
        logger.warning("LLM provider quota exhausted: %s", detail)
        return UpstreamQuotaExceededError(detail)
    if status_code == 429:
        logger.warning("LLM provider rate limited: %s", detail)
        return UpstreamRateLimitedError(detail)

    logger.warning("LLM provider call failed: %s", detail)
    return UpstreamUnknownError(detail)
