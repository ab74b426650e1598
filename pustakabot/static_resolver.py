from __future__ import annotations

import logging
from typing import List, Optional

from .response_store import ResponseStore

logger = logging.getLogger("pustakabot.static")

RESOLVE_CATEGORIES = ("system_commands", "general_services", "member_services", "academic_services")
SAFETY_CATEGORIES = ("general_services", "member_services", "academic_services")


class StaticResolver:
    """Keyword lookup over the response table in fixed category order."""

    def __init__(self, store: ResponseStore) -> None:
        self._store = store

    def resolve(self, normalized: str) -> Optional[str]:
        """Purpose: Find a pre-authored reply for a normalized message.
        Inputs/Outputs: Input is lowercased/trimmed text; output is reply text or None.
        Side Effects / State: Logs the matched category and key.
        Dependencies: Reads the current table from ResponseStore on every call.
        Failure Modes: Missing categories are skipped; no match returns None.
        If Removed: Every non-menu message falls through to the LLM.
        Testing Notes: Exact key beats an earlier partial key in the same category;
            one-letter keys never partially match.
        """
        if not normalized:
            return None
        table = self._store.data()
        for category in RESOLVE_CATEGORIES:
            entries = table.get(category)
            if not entries:
                continue
            exact = entries.get(normalized)
            if exact:
                logger.info("match category=%s key=%s mode=exact", category, normalized)
                return exact
            for key, reply in entries.items():
                if len(key) > 1 and key.lower().strip() in normalized:
                    logger.info("match category=%s key=%s mode=partial", category, key)
                    return reply
        return None

    def static_keywords(self) -> List[str]:
        """Return word keys (non-numeric, longer than one char) used by the LLM safety filter."""
        table = self._store.data()
        keywords: List[str] = []
        for category in SAFETY_CATEGORIES:
            for key in table.get(category, {}):
                if len(key) > 1 and not _is_number(key):
                    keywords.append(key)
        return keywords


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True
