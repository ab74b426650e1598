from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from .gemini_client import FatalLLMError, TransientLLMError
from .prompt_loader import PromptFile
from .response_store import ResponseStore
from .static_resolver import StaticResolver

logger = logging.getLogger("pustakabot.fallback")

SAFETY_MARGIN = 10

DEFAULT_SAFETY_WARNING = (
    "Sepertinya pertanyaan Anda berkaitan dengan layanan yang sudah tersedia di menu. "
    "Silakan ketik *MENU* untuk melihat pilihan layanan."
)
DEFAULT_UNAVAILABLE = "⚠️ Maaf, sistem AI sedang sibuk. Silakan ketik *MENU* untuk menggunakan layanan manual."

# datetime.weekday() order; strftime("%A") follows the C locale.
WEEKDAYS = ("Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu", "Minggu")


class Completer(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_text: str,
        max_tokens: int = 300,
        temperature: float = 0.5,
    ) -> str:
        ...


class LLMFallback:
    """Model-backed answers for messages no rule or keyword handled."""

    def __init__(
        self,
        completer: Completer,
        resolver: StaticResolver,
        store: ResponseStore,
        prompt_path: Path,
        max_attempts: int = 3,
        max_tokens: int = 300,
        temperature: float = 0.5,
        backoff_base_sec: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Purpose: Wire the completion client, keyword source, and retry policy.
        Inputs/Outputs: Inputs are collaborators and sampling/retry limits; no return.
        Side Effects / State: None; the prompt file is read on first use and whenever it changes.
        Dependencies: Completer.complete, StaticResolver.static_keywords, PromptFile.
        Failure Modes: None at init.
        If Removed: Free-text questions get no answer at all.
        Testing Notes: Inject a fake completer and a no-op sleep.
        """
        self._completer = completer
        self._resolver = resolver
        self._store = store
        self._prompt = PromptFile(prompt_path)
        self._max_attempts = max(1, max_attempts)
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._backoff_base_sec = backoff_base_sec
        self._sleep = sleep
        self._clock = clock

    def is_too_similar_to_static(self, normalized: str) -> bool:
        """Purpose: Detect messages that are barely more than a known static keyword.
        Inputs/Outputs: Input is normalized text; output is True when the model should
            not answer.
        Side Effects / State: None.
        Dependencies: Uses StaticResolver.static_keywords.
        Failure Modes: None; an empty keyword list never matches.
        If Removed: The model paraphrases (and may contradict) curated answers that
            the resolver missed because of punctuation.
        Testing Notes: "jam buka?" with key "jam buka" is too similar; a long sentence
            containing the key is not.
        """
        for key in self._resolver.static_keywords():
            cleaned = key.lower().strip()
            if cleaned and cleaned in normalized and len(normalized) < len(cleaned) + SAFETY_MARGIN:
                return True
        return False

    def build_system_prompt(self) -> str:
        """Return the system instruction with the current local time appended."""
        now = self._clock()
        return f"{self._prompt.text()}\n\nWaktu lokal saat ini: {WEEKDAYS[now.weekday()]} {now.strftime('%H:%M')}."

    async def answer(self, normalized: str, text: str) -> str:
        """Purpose: Produce the fallback reply for one message; never raises.
        Inputs/Outputs: Inputs are the normalized and original text; output is the
            reply string.
        Side Effects / State: Calls the completion provider up to max_attempts times.
        Dependencies: Uses is_too_similar_to_static, build_system_prompt, Completer.
        Failure Modes: Transient errors back off (2 s, 4 s, ...) and retry; fatal or
            exhausted attempts return the unavailable notice.
        If Removed: The dialogue engine has nothing to say to unmatched questions.
        Testing Notes: Two transient failures then success returns the model text;
            one fatal failure returns the notice without a second call.
        """
        if self.is_too_similar_to_static(normalized):
            logger.info("safety filter hit; skipping model call")
            return self._store.flow_message("ai_safety_warning", DEFAULT_SAFETY_WARNING)

        unavailable = self._store.flow_message("ai_unavailable", DEFAULT_UNAVAILABLE)
        try:
            system_prompt = self.build_system_prompt()
        except OSError:
            logger.exception("fallback prompt could not be loaded path=%s", self._prompt.path)
            return unavailable

        for attempt in range(1, self._max_attempts + 1):
            try:
                reply = await self._completer.complete(
                    system_prompt,
                    text,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                )
            except TransientLLMError as exc:
                if attempt >= self._max_attempts:
                    logger.error("llm transient failure, attempts exhausted attempt=%d error=%s", attempt, exc)
                    return unavailable
                delay = self._backoff_base_sec * (2 ** (attempt - 1))
                logger.warning("llm transient failure attempt=%d retry_in=%.1fs error=%s", attempt, delay, exc)
                await self._sleep(delay)
                continue
            except FatalLLMError as exc:
                logger.error("llm fatal failure attempt=%d error=%s", attempt, exc)
                return unavailable
            except Exception:
                logger.exception("llm call raised unexpectedly attempt=%d", attempt)
                return unavailable
            logger.info("llm answered attempt=%d length=%d", attempt, len(reply))
            return reply
        return unavailable
