"""Dialogue engine: turns one inbound message plus the sender's session into a reply.

Role:
    Runs the abuse guard, loads or creates the session, handles the global
    commands, and dispatches everything else through an explicit
    (state, intent) table. Catalog lookups, static replies, and the LLM fallback
    are reached only from the handlers registered in that table.

Ordering contract:
    - Guard checks happen before the session is touched.
    - One sender's messages are processed one at a time (per-sender asyncio.Lock).
    - A handler commits a state change only after its downstream call succeeded.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from . import abuse_guard
from . import formatting
from .abuse_guard import AbuseGuard, GuardDecision
from .catalog import Book, Catalog, CatalogError
from .fallback import LLMFallback
from .replies import MultiMessage, NoReply, Reply, SingleMessage
from .response_store import ResponseStore
from .session_store import Session, SessionState, SessionStore
from .static_resolver import StaticResolver
from .utils import mask_sender, normalize, sanitize_display_name

logger = logging.getLogger("pustakabot.dialogue")

MIN_TITLE_CHARS = 3
MIN_AUTHOR_CHARS = 2
MIN_UNIVERSAL_CHARS = 3

SINGLE_CHAR_RE = re.compile(r"^[a-z0-9]$")
MEMBER_ID_RE = re.compile(r"^[0-9]+$")

DEFAULT_MENU = (
    "📋 *MENU LAYANAN PERPUSTAKAAN*\n\n"
    "1. Pencarian Buku\n"
    "2. Cek Status Anggota & Pinjaman\n"
    "3. Tata Tertib & Jam Buka\n\n"
    "Ketik *angka* menu yang diinginkan, atau *END* untuk mengakhiri sesi."
)

DEFAULT_FLOW_MESSAGES: Dict[str, str] = {
    "welcome_message": "Selamat datang di PustakaBot.",
    "session_end_message": "Terima kasih, sesi dihentikan.",
    "prompt_search_universal": "🔍 Silakan ketik *Judul Buku*, *Nama Pengarang*, atau *ID Buku* yang Anda cari.",
    "prompt_kriteria": "Cari berdasarkan apa?\n1. Judul\n2. Pengarang",
    "prompt_judul": "Silakan ketik *Judul Buku* yang ingin Anda cari (minimal 3 huruf).",
    "prompt_pengarang": "Silakan ketik *Nama Pengarang* yang ingin Anda cari.",
    "prompt_book_input": "🔍 Silakan ketik *Judul Buku* atau *Nama Pengarang* yang ingin Anda cari.",
    "prompt_book_id_again": "Silakan ketik Judul, Pengarang, atau ID Buku yang Anda cari.",
    "invalid_criteria": "⚠️ Pilihan tidak valid. Ketik *1* untuk Judul atau *2* untuk Pengarang.",
    "invalid_menu_selection": "⚠️ Pilihan menu tidak tersedia.\n\n",
    "member_id_format_error": "⚠️ Format NIM salah. Harap masukkan angka saja.",
    "ask_member_id": "Silakan masukkan *NIM* Anda untuk melihat status pinjaman.",
    "ban_notice": (
        "⛔ *SISTEM KEAMANAN*\n\n"
        "Anda mengirim pesan terlalu cepat (Spam).\nAkses diblokir selama 30 menit."
    ),
    "message_too_long": (
        "⚠️ *Pesan Terlalu Panjang*\n\n"
        "Pesan Anda mengandung {length} karakter (Batas: {limit}).\n"
        "Mohon persingkat pertanyaan Anda agar bisa diproses."
    ),
    "search_error": "⚠️ Terjadi kesalahan pada sistem pencarian. Silakan coba lagi nanti atau ketik *MENU*.",
}


class Intent(str, enum.Enum):
    CHOICE_1 = "choice_1"
    CHOICE_2 = "choice_2"
    TITLE = "title"
    AUTHOR = "author"
    LOAN = "loan"
    ANY = "any"


def classify_intent(normalized: str) -> Intent:
    """Map normalized text to the intent keys used by the dispatch table."""
    if normalized == "1":
        return Intent.CHOICE_1
    if normalized == "2":
        return Intent.CHOICE_2
    if normalized == "judul":
        return Intent.TITLE
    if normalized == "pengarang":
        return Intent.AUTHOR
    if "pinjaman" in normalized:
        return Intent.LOAN
    return Intent.ANY


@dataclass
class Turn:
    """One inbound message as seen by a state handler."""
    session: Session
    text: str
    normalized: str

    @property
    def sender_id(self) -> str:
        return self.session.sender_id


Handler = Callable[[Turn], Awaitable[Reply]]


class SenderLocks:
    """Per-sender asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, sender_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(sender_id, asyncio.Lock())
        self._holders[sender_id] = self._holders.get(sender_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[sender_id] -= 1
            if self._holders[sender_id] == 0:
                del self._holders[sender_id]
                del self._locks[sender_id]


class DialogueEngine:
    """Finite-state dialogue over sessions, catalog lookups, static replies, and the LLM."""

    def __init__(
        self,
        store: ResponseStore,
        sessions: SessionStore,
        guard: AbuseGuard,
        catalog: Catalog,
        fallback: LLMFallback,
        resolver: Optional[StaticResolver] = None,
        book_search_mode: str = "hybrid",
        result_limit: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Wire collaborators and build the (state, intent) dispatch table.
        Inputs/Outputs: Inputs are the process-scoped stores and collaborators; no return.
        Side Effects / State: Allocates per-sender locks.
        Dependencies: ResponseStore, SessionStore, AbuseGuard, Catalog, LLMFallback.
        Failure Modes: None at init.
        If Removed: The process-message endpoint has nothing to call.
        Testing Notes: Build with in-memory fakes and drive handle() with asyncio.run.
        """
        self._store = store
        self._sessions = sessions
        self._guard = guard
        self._catalog = catalog
        self._fallback = fallback
        self._resolver = resolver or StaticResolver(store)
        self._book_search_mode = book_search_mode
        self._result_limit = result_limit
        self._clock = clock
        self._locks = SenderLocks()
        self._table: Dict[Tuple[SessionState, Intent], Handler] = {
            (SessionState.MAIN_MENU, Intent.CHOICE_1): self._start_book_search,
            (SessionState.MAIN_MENU, Intent.CHOICE_2): self._ask_member_id,
            (SessionState.MAIN_MENU, Intent.LOAN): self._ask_member_id,
            (SessionState.MAIN_MENU, Intent.ANY): self._answer_free_text,
            (SessionState.WAITING_FOR_CRITERIA, Intent.TITLE): self._choose_title_criteria,
            (SessionState.WAITING_FOR_CRITERIA, Intent.CHOICE_1): self._choose_title_criteria,
            (SessionState.WAITING_FOR_CRITERIA, Intent.AUTHOR): self._choose_author_criteria,
            (SessionState.WAITING_FOR_CRITERIA, Intent.CHOICE_2): self._choose_author_criteria,
            (SessionState.WAITING_FOR_CRITERIA, Intent.ANY): self._invalid_criteria,
            (SessionState.WAITING_FOR_TITLE, Intent.ANY): self._search_title,
            (SessionState.WAITING_FOR_AUTHOR, Intent.ANY): self._search_author,
            (SessionState.WAITING_FOR_BOOK_INPUT, Intent.ANY): self._search_book_input,
            (SessionState.WAITING_FOR_BOOK_ID, Intent.CHOICE_1): self._reprompt_book_id,
            (SessionState.WAITING_FOR_BOOK_ID, Intent.ANY): self._lookup_book_id,
            (SessionState.WAITING_FOR_MEMBER_ID, Intent.ANY): self._lookup_member,
        }

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def guard(self) -> AbuseGuard:
        return self._guard

    # ------------------------------------------------------------------
    # Entry point

    async def handle(
        self,
        sender_id: str,
        text: Optional[str],
        user_name: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Reply:
        """Purpose: Produce the reply for one inbound message.
        Inputs/Outputs: Inputs are sender id, raw text, optional profile name, and
            epoch seconds; output is NoReply, SingleMessage, or MultiMessage.
        Side Effects / State: Updates abuse records, the sender's session, and logs.
        Dependencies: AbuseGuard, SessionStore, the dispatch table, Catalog, LLMFallback.
        Failure Modes: CatalogError becomes the search_error reply with state intact;
            other exceptions propagate to the HTTP boundary.
        If Removed: No message is ever answered.
        Testing Notes: A new sender gets [greeting, menu]; "menu" always returns the
            menu and MAIN_MENU.
        """
        now = self._clock() if now is None else now
        text = text or ""
        decision = self._guard.check_and_record(sender_id, text, now)
        if not decision.allow:
            return self._guard_reply(decision)

        async with self._locks.hold(sender_id):
            session, is_new = self._sessions.get_or_create(sender_id, now)
            if is_new:
                return self._greeting(user_name)

            normalized = normalize(text)
            if normalized == "menu":
                self._sessions.reset(sender_id)
                return SingleMessage(self._menu())
            if normalized == "end":
                self._sessions.end(sender_id)
                return SingleMessage(self._flow("session_end_message"))

            intent = classify_intent(normalized)
            handler = self._dispatch(session.state, intent)
            logger.info(
                "dispatch sender=%s state=%s intent=%s handler=%s",
                mask_sender(sender_id),
                session.state.value,
                intent.value,
                getattr(handler, "__name__", "handler"),
            )
            turn = Turn(session=session, text=text.strip(), normalized=normalized)
            try:
                return await handler(turn)
            except CatalogError as exc:
                logger.error("catalog unavailable sender=%s error=%s", mask_sender(sender_id), exc)
                return SingleMessage(self._flow("search_error"))

    def _dispatch(self, state: SessionState, intent: Intent) -> Handler:
        handler = self._table.get((state, intent)) or self._table.get((state, Intent.ANY))
        return handler or self._unhandled

    # ------------------------------------------------------------------
    # Templates

    def _flow(self, key: str) -> str:
        return self._store.flow_message(key, DEFAULT_FLOW_MESSAGES.get(key, ""))

    def _menu(self) -> str:
        return self._store.category("system_commands").get("menu") or DEFAULT_MENU

    def _greeting(self, user_name: Optional[str]) -> Reply:
        name = sanitize_display_name(user_name)
        welcome = f"Halo *{name}*! " + self._flow("welcome_message")
        return MultiMessage([welcome, self._menu()])

    def _guard_reply(self, decision: GuardDecision) -> Reply:
        if decision.reason == abuse_guard.BAN_STARTED:
            return SingleMessage(self._flow("ban_notice"))
        if decision.reason == abuse_guard.TOO_LONG:
            template = self._flow("message_too_long")
            try:
                text = template.format(length=decision.length, limit=self._guard.limits.max_chars)
            except (KeyError, IndexError, ValueError):
                text = template
            return SingleMessage(text)
        return NoReply()

    # ------------------------------------------------------------------
    # MAIN_MENU

    async def _start_book_search(self, turn: Turn) -> Reply:
        if self._book_search_mode == "criteria":
            self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_CRITERIA)
            return SingleMessage(self._flow("prompt_kriteria"))
        if self._book_search_mode == "universal":
            self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_BOOK_INPUT)
            return SingleMessage(self._flow("prompt_book_input"))
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_BOOK_ID)
        return SingleMessage(self._flow("prompt_search_universal"))

    async def _ask_member_id(self, turn: Turn) -> Reply:
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_MEMBER_ID)
        prompt = self._store.category("general_services").get("2") or self._flow("ask_member_id")
        return SingleMessage(prompt)

    async def _answer_free_text(self, turn: Turn) -> Reply:
        """Static keyword reply, then single-character guard, then the LLM."""
        static_reply = self._resolver.resolve(turn.normalized)
        if static_reply:
            return SingleMessage(static_reply)
        if SINGLE_CHAR_RE.match(turn.normalized):
            return SingleMessage(self._flow("invalid_menu_selection") + self._menu())
        if not turn.normalized:
            return SingleMessage(self._menu())
        logger.info("llm fallback sender=%s", mask_sender(turn.sender_id))
        return SingleMessage(await self._fallback.answer(turn.normalized, turn.text))

    # ------------------------------------------------------------------
    # WAITING_FOR_CRITERIA

    async def _choose_title_criteria(self, turn: Turn) -> Reply:
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_TITLE)
        return SingleMessage(self._flow("prompt_judul"))

    async def _choose_author_criteria(self, turn: Turn) -> Reply:
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_AUTHOR)
        return SingleMessage(self._flow("prompt_pengarang"))

    async def _invalid_criteria(self, turn: Turn) -> Reply:
        return SingleMessage(self._flow("invalid_criteria"))

    # ------------------------------------------------------------------
    # Keyword searches

    async def _search_title(self, turn: Turn) -> Reply:
        keyword = turn.text
        if len(keyword) < MIN_TITLE_CHARS:
            return SingleMessage(formatting.too_short_reply(keyword, MIN_TITLE_CHARS))
        books = await self._catalog.search_by_title(keyword)
        if not books:
            return SingleMessage(formatting.title_not_found_reply(keyword))
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_BOOK_ID)
        return SingleMessage(formatting.format_book_list(books, keyword, limit=self._result_limit))

    async def _search_author(self, turn: Turn) -> Reply:
        keyword = turn.text
        if len(keyword) < MIN_AUTHOR_CHARS:
            return SingleMessage(formatting.too_short_reply(keyword, MIN_AUTHOR_CHARS, subject="Nama pengarang"))
        books = await self._catalog.search_by_author(keyword)
        if not books:
            return SingleMessage(formatting.author_not_found_reply(keyword))
        self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_BOOK_ID)
        return SingleMessage(
            formatting.format_book_list(
                books,
                keyword,
                heading="👤 *HASIL PENCARIAN PENGARANG*",
                limit=self._result_limit,
                author_first=True,
            )
        )

    async def _search_book_input(self, turn: Turn) -> Reply:
        """Universal search first, then the same input as an exact book id."""
        keyword = turn.normalized
        if len(keyword) >= MIN_UNIVERSAL_CHARS:
            books = await self._catalog.search_universal(keyword)
            if books:
                self._sessions.set_state(turn.sender_id, SessionState.WAITING_FOR_BOOK_ID)
                return SingleMessage(formatting.format_book_list(books, keyword, limit=self._result_limit))

        detail = await self._catalog.get_detail(keyword)
        if detail is not None:
            self._sessions.reset(turn.sender_id)
            return SingleMessage(formatting.format_book_detail(detail))

        if len(keyword) < MIN_UNIVERSAL_CHARS:
            return SingleMessage(formatting.too_short_reply(keyword, MIN_UNIVERSAL_CHARS))
        return SingleMessage(formatting.combined_not_found_reply(keyword))

    # ------------------------------------------------------------------
    # WAITING_FOR_BOOK_ID

    async def _reprompt_book_id(self, turn: Turn) -> Reply:
        return SingleMessage(self._flow("prompt_book_id_again"))

    async def _lookup_book_id(self, turn: Turn) -> Reply:
        """Purpose: Resolve input as a book id, else as a title/author keyword.
        Inputs/Outputs: Input is the current Turn; output is a detail, list, or
            not-found reply.
        Side Effects / State: Resets to MAIN_MENU only when an id matched.
        Dependencies: Catalog.get_detail, then search_by_title and search_by_author
            run concurrently.
        Failure Modes: One failing search is logged and ignored; both failing raise
            CatalogError.
        If Removed: Users could not pick a book from a result list.
        Testing Notes: Results found by both searches appear once, in title-first order.
        """
        keyword = turn.text
        detail = await self._catalog.get_detail(keyword)
        if detail is not None:
            self._sessions.reset(turn.sender_id)
            return SingleMessage(formatting.format_book_detail(detail))

        merged = await self._merged_search(keyword)
        if merged:
            return SingleMessage(
                formatting.format_book_list(merged, keyword, limit=self._result_limit, total=len(merged))
            )
        if len(keyword) < MIN_UNIVERSAL_CHARS:
            return SingleMessage(
                formatting.too_short_reply(keyword, MIN_UNIVERSAL_CHARS, subject="Input")
            )
        return SingleMessage(formatting.book_id_not_found_reply(keyword))

    async def _merged_search(self, keyword: str) -> List[Book]:
        results = await asyncio.gather(
            self._catalog.search_by_title(keyword),
            self._catalog.search_by_author(keyword),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure
            logger.warning("merged search leg failed error=%s", failure)
        if len(failures) == len(results):
            raise CatalogError("title and author searches both failed")
        return merge_unique_books(result for result in results if not isinstance(result, BaseException))

    # ------------------------------------------------------------------
    # WAITING_FOR_MEMBER_ID

    async def _lookup_member(self, turn: Turn) -> Reply:
        member_id = turn.text
        if not MEMBER_ID_RE.match(member_id):
            return SingleMessage(self._flow("member_id_format_error"))
        member = await self._catalog.get_member_status(member_id)
        if member is None:
            return SingleMessage(formatting.member_not_found_reply(member_id))
        self._sessions.reset(turn.sender_id)
        return SingleMessage(formatting.format_member_status(member))

    # ------------------------------------------------------------------

    async def _unhandled(self, turn: Turn) -> Reply:
        self._sessions.reset(turn.sender_id)
        return SingleMessage(self._flow("invalid_menu_selection"))


def merge_unique_books(result_lists) -> List[Book]:
    """Concatenate result lists, keeping the first occurrence of each book id."""
    seen = set()
    merged: List[Book] = []
    for books in result_lists:
        for book in books:
            if book.book_id in seen:
                continue
            seen.add(book.book_id)
            merged.append(book)
    return merged
