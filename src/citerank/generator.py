from __future__ import annotations

import time
from typing import Protocol

import httpx
import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .config import settings
from .errors import GenerationError, GenerationTimeout
from .models import Chunk

log = structlog.get_logger()

SYSTEM_PROMPT = """\
You are a precise, helpful assistant that answers questions using ONLY the \
provided context. Follow these rules strictly:

1. Base your answer ONLY on the provided context. Do not use prior knowledge.
2. If the context does not contain enough information, say so explicitly.
3. Be concise and direct. Do not repeat the question.
"""

_RETRY_BASE_DELAY = 0.5


class Generator(Protocol):
    def generate(self, prompt: str) -> str: ...


def build_context_prompt(
    question: str,
    chunks: list[Chunk],
    max_context_chars: int | None = None,
) -> str:
    """Plain (uncited) RAG prompt; stops adding sources before the size limit."""
    limit = max_context_chars if max_context_chars is not None else settings.max_context_chars
    context = f"Question: {question}\n\nRelevant Information:\n\n"

    for i, chunk in enumerate(chunks, start=1):
        block = f"Source {i} ({chunk.document_filename}):\n{chunk.content}\n\n"
        if len(context) + len(block) > limit:
            log.warning("context_limit_reached", used_chunks=i - 1, total_chunks=len(chunks))
            break
        context += block

    context += "Based on the above information, please answer the question."
    return context


class GeminiGenerator:
    """Text generation through google-genai with an explicit request timeout."""

    def __init__(
        self,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        client: genai.Client | None = None,
    ) -> None:
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.llm_max_output_tokens
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(
                api_key=settings.gemini_api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout_seconds * 1000)),
            )
        return self._client

    def _call(self, prompt: str) -> str:
        try:
            response = self._get_client().models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_PROMPT,
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except httpx.TimeoutException as exc:
            raise GenerationTimeout(
                f"LLM call timed out after {self.timeout_seconds}s", prompt=prompt
            ) from exc
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise GenerationError(f"LLM call failed: {exc}", prompt=prompt) from exc
        return response.text or ""

    def generate(self, prompt: str) -> str:
        """Generate text, retrying with exponential backoff up to max_retries."""
        attempt = 0
        while True:
            try:
                text = self._call(prompt)
                log.info("generated", model=self.model, chars=len(text), attempt=attempt)
                return text
            except GenerationError as exc:
                if attempt >= self.max_retries:
                    raise
                wait = _RETRY_BASE_DELAY * (2**attempt)
                log.warning("generation_retry", attempt=attempt, wait=wait, error=str(exc))
                time.sleep(wait)
                attempt += 1
