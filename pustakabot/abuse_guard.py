"""Per-sender abuse defense applied before any session work.

Two independent filters are stacked here. The cooldown drops any message that
arrives within `cooldown_sec` of the previous one. The rate window counts messages
per sender inside a fixed window and bans the sender once the count passes
`max_messages`. A message that survives both is still rejected when it is longer
than `max_chars`.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .utils import mask_sender

logger = logging.getLogger("pustakabot.guard")

ALLOWED = "allowed"
COOLDOWN = "cooldown"
BANNED = "banned"
BAN_STARTED = "ban_started"
TOO_LONG = "too_long"

# Reasons that deserve a reply; the rest are dropped silently.
REPLY_REASONS = {BAN_STARTED, TOO_LONG}


@dataclass(frozen=True)
class GuardLimits:
    cooldown_sec: float = 1.0
    window_sec: float = 60.0
    max_messages: int = 22
    ban_duration_sec: float = 30 * 60.0
    max_chars: int = 300


@dataclass
class AbuseRecord:
    message_count: int = 0
    window_started_at: float = 0.0
    banned_until: float = 0.0
    last_message_at: Optional[float] = None


@dataclass(frozen=True)
class GuardDecision:
    allow: bool
    reason: str = ALLOWED
    length: int = 0

    @property
    def silent(self) -> bool:
        return not self.allow and self.reason not in REPLY_REASONS


class AbuseGuard:
    """Process-scoped cooldown, rate-window, ban, and length checks."""

    def __init__(self, limits: Optional[GuardLimits] = None) -> None:
        self._limits = limits or GuardLimits()
        self._records: Dict[str, AbuseRecord] = {}

    @property
    def limits(self) -> GuardLimits:
        return self._limits

    def __len__(self) -> int:
        return len(self._records)

    def record_for(self, sender_id: str) -> Optional[AbuseRecord]:
        return self._records.get(sender_id)

    def prune(self, now: float) -> int:
        """Purpose: Drop records that no longer carry any penalty or window state.
        Inputs/Outputs: Input is epoch seconds; output is the number of records removed.
        Side Effects / State: Deletes records whose ban has ended, whose rate window
            has lapsed, and whose last message is outside the cooldown.
        Dependencies: Called from the session sweeper tick.
        Failure Modes: None; an active ban or open window keeps its record.
        If Removed: The record map grows by one entry per distinct sender forever.
        Testing Notes: A banned sender survives pruning until banned_until passes.
        """
        stale = [
            sender_id
            for sender_id, record in self._records.items()
            if now >= record.banned_until
            and now - record.window_started_at > self._limits.window_sec
            and (record.last_message_at is None or now - record.last_message_at >= self._limits.cooldown_sec)
        ]
        for sender_id in stale:
            del self._records[sender_id]
        if stale:
            logger.debug("pruned abuse records count=%d remaining=%d", len(stale), len(self._records))
        return len(stale)

    def check_and_record(self, sender_id: str, text: str, now: float) -> GuardDecision:
        """Purpose: Decide whether a message may be processed and record it.
        Inputs/Outputs: Inputs are sender id, raw text, and epoch seconds; output is
            a GuardDecision with the rejection reason, if any.
        Side Effects / State: Always stamps last_message_at first; updates the window
            counter and ban deadline.
        Dependencies: Uses GuardLimits; called by DialogueEngine.handle before the
            session is touched.
        Failure Modes: None; penalties are never lifted by user action.
        If Removed: Spam floods reach the catalog and the LLM unthrottled.
        Testing Notes: Two messages 0.5 s apart -> second is COOLDOWN; the 23rd
            message inside a minute -> BAN_STARTED, later ones BANNED.
        """
        record = self._records.setdefault(sender_id, AbuseRecord(window_started_at=now))
        previous = record.last_message_at
        record.last_message_at = now

        if previous is not None and now - previous < self._limits.cooldown_sec:
            logger.warning("cooldown drop sender=%s gap=%.3f", mask_sender(sender_id), now - previous)
            return GuardDecision(allow=False, reason=COOLDOWN)

        if now < record.banned_until:
            logger.info(
                "banned drop sender=%s remaining=%ds",
                mask_sender(sender_id),
                int(record.banned_until - now),
            )
            return GuardDecision(allow=False, reason=BANNED)

        if now - record.window_started_at > self._limits.window_sec:
            record.message_count = 1
            record.window_started_at = now
        else:
            record.message_count += 1
        logger.debug(
            "rate check sender=%s count=%d max=%d",
            mask_sender(sender_id),
            record.message_count,
            self._limits.max_messages,
        )

        if record.message_count > self._limits.max_messages:
            record.banned_until = now + self._limits.ban_duration_sec
            logger.warning("ban started sender=%s until=%.0f", mask_sender(sender_id), record.banned_until)
            return GuardDecision(allow=False, reason=BAN_STARTED)

        length = len(text or "")
        if length > self._limits.max_chars:
            logger.warning("message too long sender=%s length=%d", mask_sender(sender_id), length)
            return GuardDecision(allow=False, reason=TOO_LONG, length=length)

        return GuardDecision(allow=True, length=length)
