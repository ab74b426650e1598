import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Keep the module-level app from writing into the package directory during collection.
os.environ.setdefault("ANALYTICS_DB_PATH", str(Path(tempfile.mkdtemp()) / "analytics.db"))

from pustakabot.abuse_guard import AbuseGuard, GuardLimits
from pustakabot.catalog import Book, BookCopy, BookDetail, CatalogError, Loan, Member
from pustakabot.dialogue import DialogueEngine
from pustakabot.fallback import LLMFallback
from pustakabot.response_store import ResponseStore
from pustakabot.session_store import SessionStore
from pustakabot.static_resolver import StaticResolver

ROOT = Path(__file__).resolve().parents[1]
RESPONSES_FIXTURE = ROOT / "resources" / "responses.json"
PROMPT_PATH = ROOT / "pustakabot" / "prompts" / "fallback_system.md"


class FakeCatalog:
    """In-memory catalog; method names listed in `failing` raise CatalogError."""

    def __init__(
        self,
        books: Optional[List[Book]] = None,
        details: Optional[Dict[str, BookDetail]] = None,
        members: Optional[Dict[str, Member]] = None,
    ) -> None:
        self.books = books or []
        self.details = details or {}
        self.members = members or {}
        self.failing = set()
        self.calls = []

    def _call(self, name, arg):
        self.calls.append((name, arg))
        if name in self.failing:
            raise CatalogError(f"{name} is down")

    async def search_by_title(self, keyword):
        self._call("search_by_title", keyword)
        return [book for book in self.books if keyword.lower() in book.title.lower()]

    async def search_by_author(self, keyword):
        self._call("search_by_author", keyword)
        return [book for book in self.books if keyword.lower() in book.author.lower()]

    async def search_universal(self, keyword):
        self._call("search_universal", keyword)
        lowered = keyword.lower()
        return [
            book for book in self.books if lowered in book.title.lower() or lowered in book.author.lower()
        ]

    async def get_detail(self, book_id):
        self._call("get_detail", book_id)
        return self.details.get(book_id)

    async def get_member_status(self, member_id):
        self._call("get_member_status", member_id)
        return self.members.get(member_id)


class FakeCompleter:
    """Returns queued outcomes in order; exceptions in the queue are raised."""

    def __init__(self, outcomes=None) -> None:
        self.outcomes = list(outcomes or ["Untuk informasi tersebut, silakan ketik angka *3*."])
        self.calls = []

    async def complete(self, system_prompt, user_text, max_tokens=300, temperature=0.5):
        self.calls.append({"system_prompt": system_prompt, "user_text": user_text, "max_tokens": max_tokens})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeNotifier:
    def __init__(self, delivered=True, raises=False) -> None:
        self.delivered = delivered
        self.raises = raises
        self.sent = []

    async def send_direct(self, to, message):
        self.sent.append((to, message))
        if self.raises:
            raise RuntimeError("gateway exploded")
        return self.delivered


class Ticker:
    """Clock that advances a fixed step on every read."""

    def __init__(self, start=1_000_000.0, step=5.0) -> None:
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


async def no_sleep(_seconds):
    return None


HARRY_1 = Book(book_id="B001", title="Harry Potter dan Batu Bertuah", author="J.K. Rowling", year=2015)
HARRY_2 = Book(book_id="B002", title="Harry Potter dan Kamar Rahasia", author="J.K. Rowling", year=2016)
PRAMOEDYA = Book(book_id="B100", title="Bumi Manusia", author="Pramoedya Ananta Toer", year=2011)

BUMI_DETAIL = BookDetail(
    book_id="B100",
    title="Bumi Manusia",
    author="Pramoedya Ananta Toer",
    publisher="Lentera Dipantara",
    year=2011,
    copies=[BookCopy(barcode="0001", location="Rak 3A", campus="Meruya", availability="Tersedia")],
)

MEMBER = Member(
    member_id="41520010001",
    name="Siti Aminah",
    loans=[Loan(title="Bumi Manusia", due_date=None)],
)


@pytest.fixture
def store(tmp_path):
    path = tmp_path / "responses.json"
    shutil.copyfile(RESPONSES_FIXTURE, path)
    return ResponseStore(path, backup_dir=tmp_path / "backups")


@pytest.fixture
def catalog():
    return FakeCatalog(
        books=[HARRY_2, HARRY_1, PRAMOEDYA],
        details={"B100": BUMI_DETAIL},
        members={MEMBER.member_id: MEMBER},
    )


@pytest.fixture
def completer():
    return FakeCompleter()


@pytest.fixture
def make_engine(store, catalog, completer):
    def _make(mode="hybrid", notifier=None, clock=None):
        resolver = StaticResolver(store)
        fallback = LLMFallback(
            completer=completer,
            resolver=resolver,
            store=store,
            prompt_path=PROMPT_PATH,
            sleep=no_sleep,
        )
        return DialogueEngine(
            store=store,
            sessions=SessionStore(timeout_sec=30 * 60, notifier=notifier),
            guard=AbuseGuard(GuardLimits()),
            catalog=catalog,
            fallback=fallback,
            resolver=resolver,
            book_search_mode=mode,
            clock=clock or Ticker(),
        )

    return _make
