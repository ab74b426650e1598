from __future__ import annotations

import asyncio
import logging
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai import types as genai_types

from .config import Settings

logger = logging.getLogger("pustakabot.llm")

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
]

# Server-side hiccups worth another attempt. Quota (429) is deliberately absent.
TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.DeadlineExceeded,
)


class LLMError(RuntimeError):
    """Base error for completion failures."""


class TransientLLMError(LLMError):
    """The provider may succeed if asked again shortly."""


class FatalLLMError(LLMError):
    """Retrying will not help (quota, auth, blocked or empty output)."""


class GeminiClient:
    """Async completion wrapper around the Gemini SDK with timeout and error classification."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK for the fallback path.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key when one is set.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: A missing key is logged; every complete() call then raises
            FatalLLMError so the bot keeps serving menu flows.
        If Removed: Free-text questions have no model to fall back on.
        Testing Notes: Without a key, complete() raises FatalLLMError.
        """
        self._api_key = settings.gemini_api_key
        self._model_name = _normalize_model_name(settings.gemini_model)
        self._timeout_sec = settings.llm_timeout_sec
        if self._api_key:
            genai.configure(api_key=self._api_key)
        else:
            logger.warning("GEMINI_API_KEY is not set; LLM fallback will answer with the unavailable notice")

    async def complete(
        self,
        system_prompt: str,
        user_text: str,
        max_tokens: int = 300,
        temperature: float = 0.5,
    ) -> str:
        """Purpose: Generate one reply for a user message under a system instruction.
        Inputs/Outputs: Inputs are the system prompt, user text, and sampling limits;
            output is the stripped reply text.
        Side Effects / State: One network call to the provider.
        Dependencies: Uses genai.GenerativeModel.generate_content_async.
        Failure Modes: Timeouts and 5xx raise TransientLLMError; quota, auth, blocked
            or empty output and anything unrecognized raise FatalLLMError.
        If Removed: LLMFallback cannot reach the provider.
        Testing Notes: Patch the SDK call to raise ServiceUnavailable and expect
            TransientLLMError.
        """
        if not self._api_key:
            raise FatalLLMError("GEMINI_API_KEY is not configured")
        if not self._model_name:
            raise FatalLLMError("Gemini model name is required")
        model = genai.GenerativeModel(self._model_name, system_instruction=system_prompt)
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(
                    user_text,
                    generation_config={
                        "temperature": temperature,
                        "max_output_tokens": max_tokens,
                    },
                    safety_settings=DEFAULT_SAFETY_SETTINGS,
                ),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise TransientLLMError(f"Gemini call timed out after {self._timeout_sec:g}s") from exc
        except TRANSIENT_ERRORS as exc:
            raise TransientLLMError(str(exc)) from exc
        except google_exceptions.GoogleAPIError as exc:
            raise FatalLLMError(str(exc)) from exc

        try:
            text: Optional[str] = response.text
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or has no parts.
            raise FatalLLMError("Gemini returned no usable text") from exc
        text = (text or "").strip()
        if not text:
            raise FatalLLMError("Empty Gemini response")
        return text


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip the "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
