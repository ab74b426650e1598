from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("pustakabot.prompts")

BOM = "\ufeff"


def load_prompt(prompt_path: Path) -> str:
    """Read a prompt file as UTF-8, dropping a leading BOM and undecodable bytes."""
    raw = prompt_path.read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("prompt is not valid UTF-8; dropping bad bytes path=%s", prompt_path.name)
        text = raw.decode("utf-8", errors="ignore")
    return text.lstrip(BOM).strip()


class PromptFile:
    """A prompt on disk, re-read whenever its modification time changes."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._mtime: Optional[float] = None
        self._text = ""

    @property
    def path(self) -> Path:
        return self._path

    def text(self) -> str:
        """Purpose: Return the current prompt text.
        Inputs/Outputs: No inputs; output is the stripped prompt.
        Side Effects / State: Re-reads the file when its mtime differs from the cached one.
        Dependencies: Uses load_prompt.
        Failure Modes: A missing or unreadable file raises OSError to the caller.
        If Removed: Edits to the fallback prompt need a service restart.
        Testing Notes: Rewrite the file with a new mtime and expect the new text.
        """
        mtime = self._path.stat().st_mtime
        if mtime != self._mtime:
            self._text = load_prompt(self._path)
            self._mtime = mtime
            logger.info("prompt loaded path=%s chars=%d", self._path.name, len(self._text))
        return self._text
