"""
llm_client.py — Text-generation backends and JSON extraction.

Callers send a prompt and get prose back; the prose is expected to contain
one JSON object, possibly wrapped in markdown fences or chatter, which
`extract_json_object` digs out.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import httpx

from config import Settings, get_settings
from errors import LLMResponseError, TextGenerationError

logger = logging.getLogger(__name__)


# ============================================================
# JSON Extraction
# ============================================================

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def _balanced_object_at(text: str, start: int) -> Optional[str]:
    """Return the balanced {...} substring beginning at `start`, or None."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse the first well-formed, balanced JSON object embedded in `text`.

    Tolerates surrounding prose, ```json fences and trailing commas.
    Raises LLMResponseError if no object can be parsed.
    """
    if not text:
        raise LLMResponseError("Empty response from text-generation service")

    pos = text.find("{")
    while pos != -1:
        candidate = _balanced_object_at(text, pos)
        if candidate is None:
            break
        for attempt in (candidate, _TRAILING_COMMA.sub(r"\1", candidate)):
            try:
                parsed = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        pos = text.find("{", pos + 1)

    raise LLMResponseError(f"No JSON object found in response: {text[:120]!r}")


# ============================================================
# Clients
# ============================================================

class TextGenerationClient:
    """
    Abstract text-generation backend.
    Implementations return the raw completion text.
    """

    async def generate(
        self,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class _HTTPTextClient(TextGenerationClient):
    """Shared httpx plumbing for HTTP-backed generators."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.timeout = httpx.Timeout(settings.external_call_timeout_s)
        self._http = http
        self._owns_http = http is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            response = await self.http.post(url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Text-generation API error %s from %s",
                         e.response.status_code, url)
            raise TextGenerationError(
                f"Text-generation API returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Text-generation connection error (%s): %s", url, e)
            raise TextGenerationError(f"Text-generation request failed: {e}") from e
        except ValueError as e:
            raise TextGenerationError("Text-generation API returned invalid JSON") from e
        if not isinstance(data, dict):
            raise TextGenerationError(
                f"Text-generation API returned {type(data).__name__}, expected an object")
        return data

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


class OllamaTextClient(_HTTPTextClient):
    """Ollama /api/generate, non-streaming."""

    async def generate(self, prompt, *, temperature=None, max_tokens=None) -> str:
        payload = {
            "model": self.settings.llm_model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.settings.llm_temperature if temperature is None else temperature,
                "num_predict": max_tokens or self.settings.llm_max_tokens,
            },
        }
        data = await self._post(self.settings.llm_api_url, payload)
        text = data.get("response")
        if not isinstance(text, str):
            raise TextGenerationError("Ollama response missing 'response' text")
        return text


class OpenAITextClient(_HTTPTextClient):
    """OpenAI-compatible chat completions endpoint."""

    async def generate(self, prompt, *, temperature=None, max_tokens=None) -> str:
        if not self.settings.openai_llm_api_key:
            raise TextGenerationError("OPENAI_LLM_API_KEY is not configured")
        payload = {
            "model": self.settings.llm_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.settings.llm_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.settings.llm_max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.settings.openai_llm_api_key}"}
        data = await self._post(self.settings.llm_api_url, payload, headers=headers)
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TextGenerationError("Unexpected chat completion payload") from e


def build_text_client(settings: Optional[Settings] = None) -> TextGenerationClient:
    settings = settings or get_settings()
    if settings.llm_provider == "openai":
        return OpenAITextClient(settings)
    return OllamaTextClient(settings)
