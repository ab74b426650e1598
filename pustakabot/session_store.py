from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .notifier import Notifier
from .utils import mask_sender

logger = logging.getLogger("pustakabot.sessions")

DEFAULT_TIMEOUT_MESSAGE = (
    "⏳ *Sesi Berakhir*\n\n"
    "Sesi percakapan Anda telah habis karena tidak ada aktivitas selama 30 menit.\n"
    "Silakan ketik *MENU* untuk memulai kembali."
)


class SessionState(str, enum.Enum):
    MAIN_MENU = "main_menu"
    WAITING_FOR_CRITERIA = "waiting_for_kriteria"
    WAITING_FOR_TITLE = "waiting_for_judul"
    WAITING_FOR_AUTHOR = "waiting_for_pengarang"
    WAITING_FOR_BOOK_INPUT = "waiting_for_book_input"
    WAITING_FOR_BOOK_ID = "waiting_for_book_id"
    WAITING_FOR_MEMBER_ID = "waiting_for_nim"


@dataclass
class Session:
    """Conversational state for one sender."""
    sender_id: str
    state: SessionState
    last_activity_at: float
    created_at: float


class SessionStore:
    """In-memory per-sender sessions with idle-timeout eviction."""

    def __init__(
        self,
        timeout_sec: float = 30 * 60,
        notifier: Optional[Notifier] = None,
        timeout_message: Optional[Callable[[], str]] = None,
    ) -> None:
        """Purpose: Initialize an empty session map.
        Inputs/Outputs: Inputs are the idle timeout, an optional notifier for expiry
            notices, and a callable returning the current notice text.
        Side Effects / State: None beyond allocating the map.
        Dependencies: Notifier.send_direct is used by sweep.
        Failure Modes: None.
        If Removed: The dialogue engine has no memory between messages.
        Testing Notes: A fresh store reports zero sessions.
        """
        self._timeout_sec = timeout_sec
        self._notifier = notifier
        self._timeout_message = timeout_message or (lambda: DEFAULT_TIMEOUT_MESSAGE)
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sender_id: object) -> bool:
        return sender_id in self._sessions

    def get(self, sender_id: str) -> Optional[Session]:
        return self._sessions.get(sender_id)

    def get_or_create(self, sender_id: str, now: Optional[float] = None) -> Tuple[Session, bool]:
        """Purpose: Load the sender's session, creating it in MAIN_MENU when missing.
        Inputs/Outputs: Inputs are sender id and epoch seconds; output is
            (session, is_new) where is_new is True only for a freshly created session.
        Side Effects / State: Creates the session or refreshes last_activity_at.
        Dependencies: Uses SessionState.MAIN_MENU.
        Failure Modes: None.
        If Removed: The engine cannot tell a new conversation from a continuing one.
        Testing Notes: First call returns is_new=True, second returns False.
        """
        now = time.time() if now is None else now
        session = self._sessions.get(sender_id)
        if session is None:
            session = Session(
                sender_id=sender_id,
                state=SessionState.MAIN_MENU,
                last_activity_at=now,
                created_at=now,
            )
            self._sessions[sender_id] = session
            logger.info("session created sender=%s", mask_sender(sender_id))
            return session, True
        session.last_activity_at = now
        return session, False

    def set_state(self, sender_id: str, state: SessionState) -> None:
        session = self._sessions.get(sender_id)
        if session is None:
            return
        if session.state != state:
            logger.info(
                "state change sender=%s from=%s to=%s",
                mask_sender(sender_id),
                session.state.value,
                state.value,
            )
        session.state = state

    def reset(self, sender_id: str) -> None:
        """Return an existing session to MAIN_MENU; unknown senders are ignored."""
        self.set_state(sender_id, SessionState.MAIN_MENU)

    def end(self, sender_id: str) -> bool:
        """Delete the sender's session; returns True when one existed."""
        removed = self._sessions.pop(sender_id, None) is not None
        if removed:
            logger.info("session ended sender=%s", mask_sender(sender_id))
        return removed

    def collect_expired(self, now: Optional[float] = None) -> List[Session]:
        """Purpose: Remove and return every session idle longer than the timeout.
        Inputs/Outputs: Input is epoch seconds; output is the evicted sessions.
        Side Effects / State: Deletes expired sessions from the map.
        Dependencies: Iterates over a snapshot of the map; nothing awaits between
            the expiry check and the delete.
        Failure Modes: None.
        If Removed: Idle sessions accumulate and stale flows resume hours later.
        Testing Notes: A session 31 minutes idle is evicted; a 29-minute one is kept.
        """
        now = time.time() if now is None else now
        expired: List[Session] = []
        for sender_id, session in list(self._sessions.items()):
            if now - session.last_activity_at <= self._timeout_sec:
                continue
            del self._sessions[sender_id]
            expired.append(session)
        return expired

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Purpose: Evict idle sessions and notify each sender once.
        Inputs/Outputs: Input is epoch seconds; output is the evicted sender ids.
        Side Effects / State: Deletes sessions; sends one notice per eviction.
        Dependencies: Uses collect_expired and Notifier.send_direct.
        Failure Modes: Notifier failures are logged and do not stop the sweep.
        If Removed: Senders are never told their session expired.
        Testing Notes: With a failing notifier every expired session is still removed.
        """
        expired = self.collect_expired(now)
        evicted: List[str] = []
        for session in expired:
            logger.info("session expired sender=%s", mask_sender(session.sender_id))
            evicted.append(session.sender_id)
            if self._notifier is None:
                continue
            try:
                delivered = await self._notifier.send_direct(session.sender_id, self._timeout_message())
            except Exception:
                logger.exception("timeout notice raised sender=%s", mask_sender(session.sender_id))
                continue
            if not delivered:
                logger.warning("timeout notice not delivered sender=%s", mask_sender(session.sender_id))
        return evicted

    async def run_sweeper(
        self,
        interval_sec: float = 1.0,
        housekeeping: Optional[Callable[[float], object]] = None,
    ) -> None:
        """Run sweep, then the optional housekeeping hook, on a fixed tick until cancelled."""
        logger.info("session sweeper started interval=%.1fs timeout=%.0fs", interval_sec, self._timeout_sec)
        try:
            while True:
                await asyncio.sleep(interval_sec)
                now = time.time()
                try:
                    await self.sweep(now)
                    if housekeeping is not None:
                        housekeeping(now)
                except Exception:
                    logger.exception("session sweep failed")
        except asyncio.CancelledError:
            logger.info("session sweeper stopped")
            raise
