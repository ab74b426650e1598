"""Read-only query facade over the library's MySQL catalog.

Not-found is expressed as an empty list or None. Only infrastructure failures
(connection refused, SQL errors) raise, always as CatalogError, so the dialogue
engine can answer with a polite apology instead of crashing.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol

import pymysql

logger = logging.getLogger("pustakabot.catalog")

AVAILABLE = "Tersedia"
ON_LOAN = "Sedang Dipinjam"
RECENT_YEARS = 20
SEARCH_LIMIT = 10


class CatalogError(RuntimeError):
    """Raised when the catalog store cannot be queried."""


@dataclass(frozen=True)
class Book:
    book_id: str
    title: str
    author: str
    year: Optional[int] = None


@dataclass(frozen=True)
class BookCopy:
    barcode: str
    location: str
    campus: Optional[str]
    availability: str


@dataclass
class BookDetail:
    book_id: str
    title: str
    author: str
    publisher: Optional[str] = None
    year: Optional[int] = None
    language: Optional[str] = None
    isbn: Optional[str] = None
    call_number: Optional[str] = None
    collation: Optional[str] = None
    campus: Optional[str] = None
    copies: List[BookCopy] = field(default_factory=list)


@dataclass(frozen=True)
class Loan:
    title: str
    due_date: Optional[date]
    borrowed_at: Optional[date] = None


@dataclass
class Member:
    member_id: str
    name: str
    loans: List[Loan] = field(default_factory=list)


class Catalog(Protocol):
    async def search_by_title(self, keyword: str) -> List[Book]:
        ...

    async def search_by_author(self, keyword: str) -> List[Book]:
        ...

    async def search_universal(self, keyword: str) -> List[Book]:
        ...

    async def get_detail(self, book_id: str) -> Optional[BookDetail]:
        ...

    async def get_member_status(self, member_id: str) -> Optional[Member]:
        ...


_SEARCH_SQL = (
    "SELECT ID_Buku, Judul_Buku, Pengarang, Tahun FROM buku "
    "WHERE {where} AND Tahun >= %s ORDER BY Tahun DESC LIMIT %s"
)

_DETAIL_SQL = """
    SELECT
        b.ID_Buku, b.Judul_Buku, b.Pengarang, b.No_Penerbit, b.Tahun, b.No_Bahasa,
        b.Call_Number, b.Kolasi, b.ISBN, b.kampus AS Kampus_Utama,
        e.No_Barcode, e.Lokasi, e.kampus AS Kampus_Lokasi,
        s.Status_Kembali
    FROM buku b
    LEFT JOIN eksemplar_buku e ON b.ID_Buku = e.ID_Buku
    LEFT JOIN sirkulasi s ON e.No_Barcode = s.No_Barcode AND s.Status_Kembali = 'N'
    WHERE b.ID_Buku = %s
"""

_MEMBER_SQL = "SELECT No_Anggota, Nama FROM anggota WHERE No_Anggota = %s"

_LOANS_SQL = """
    SELECT s.Tgl_Pinjam, s.Tgl_Seharusnya, b.Judul_Buku
    FROM sirkulasi s
    JOIN eksemplar_buku e ON s.No_Barcode = e.No_Barcode
    JOIN buku b ON e.ID_Buku = b.ID_Buku
    WHERE s.No_Anggota = %s AND s.Status_Kembali = 'N'
"""


class MySQLCatalog:
    """Catalog implementation that runs blocking pymysql queries in a worker thread."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        limit: int = SEARCH_LIMIT,
        recent_years: int = RECENT_YEARS,
    ) -> None:
        self._conn_kwargs = {
            "host": host,
            "port": port,
            "user": user,
            "password": password,
            "database": database,
            "charset": "utf8mb4",
            "cursorclass": pymysql.cursors.DictCursor,
            "autocommit": True,
        }
        self._limit = limit
        self._recent_years = recent_years

    @classmethod
    def from_settings(cls, settings: Any) -> "MySQLCatalog":
        return cls(
            host=settings.mysql_host,
            port=settings.mysql_port,
            user=settings.mysql_user,
            password=settings.mysql_password,
            database=settings.mysql_database,
            limit=settings.result_limit,
        )

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = pymysql.connect(**self._conn_kwargs)
        try:
            with conn.cursor() as cursor:
                yield cursor
        finally:
            conn.close()

    def _fetch_all(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            with self._cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall())
        except pymysql.MySQLError as exc:
            logger.error("query failed error=%s", exc)
            raise CatalogError(str(exc)) from exc

    def _min_year(self) -> int:
        return datetime.now().year - self._recent_years

    def _search(self, where: str, params: tuple) -> List[Book]:
        sql = _SEARCH_SQL.format(where=where)
        rows = self._fetch_all(sql, params + (self._min_year(), self._limit))
        return [_row_to_book(row) for row in rows]

    async def search_by_title(self, keyword: str) -> List[Book]:
        """Books whose title contains the keyword, newest first."""
        return await asyncio.to_thread(self._search, "Judul_Buku LIKE %s", (f"%{keyword}%",))

    async def search_by_author(self, keyword: str) -> List[Book]:
        """Books whose author contains the keyword, newest first."""
        return await asyncio.to_thread(self._search, "Pengarang LIKE %s", (f"%{keyword}%",))

    async def search_universal(self, keyword: str) -> List[Book]:
        """Books whose title or author contains the keyword, newest first."""
        pattern = f"%{keyword}%"
        return await asyncio.to_thread(
            self._search, "(Judul_Buku LIKE %s OR Pengarang LIKE %s)", (pattern, pattern)
        )

    async def get_detail(self, book_id: str) -> Optional[BookDetail]:
        """Purpose: Load full bibliographic detail plus per-copy availability.
        Inputs/Outputs: Input is an exact book id; output is BookDetail or None.
        Side Effects / State: One joined query across buku, eksemplar_buku, sirkulasi.
        Dependencies: Uses _DETAIL_SQL and build_detail for row grouping.
        Failure Modes: Raises CatalogError on database failure.
        If Removed: Users cannot see where a copy sits or whether it is on loan.
        Testing Notes: Exercise build_detail with joined rows directly.
        """
        rows = await asyncio.to_thread(self._fetch_all, _DETAIL_SQL, (book_id,))
        return build_detail(rows)

    async def get_member_status(self, member_id: str) -> Optional[Member]:
        """Member profile with every loan not yet returned, or None when unknown."""
        return await asyncio.to_thread(self._member_status, member_id)

    def _member_status(self, member_id: str) -> Optional[Member]:
        members = self._fetch_all(_MEMBER_SQL, (member_id,))
        if not members:
            return None
        loans = self._fetch_all(_LOANS_SQL, (member_id,))
        profile = members[0]
        return Member(
            member_id=str(profile.get("No_Anggota", member_id)),
            name=str(profile.get("Nama") or ""),
            loans=[
                Loan(
                    title=str(row.get("Judul_Buku") or ""),
                    due_date=_as_date(row.get("Tgl_Seharusnya")),
                    borrowed_at=_as_date(row.get("Tgl_Pinjam")),
                )
                for row in loans
            ],
        )


def build_detail(rows: List[Dict[str, Any]]) -> Optional[BookDetail]:
    """Purpose: Fold joined detail rows (one per copy) into a single BookDetail.
    Inputs/Outputs: Input is the list of joined rows; output is BookDetail or None.
    Side Effects / State: None; pure function.
    Dependencies: Used by MySQLCatalog.get_detail.
    Failure Modes: Empty input returns None; rows without a barcode add no copy.
    If Removed: Detail replies list the same book once per copy.
    Testing Notes: An open circulation row ('N') marks that copy as on loan.
    """
    if not rows:
        return None
    first = rows[0]
    detail = BookDetail(
        book_id=str(first.get("ID_Buku")),
        title=str(first.get("Judul_Buku") or ""),
        author=str(first.get("Pengarang") or ""),
        publisher=first.get("No_Penerbit"),
        year=first.get("Tahun"),
        language=first.get("No_Bahasa"),
        isbn=first.get("ISBN"),
        call_number=first.get("Call_Number"),
        collation=first.get("Kolasi"),
        campus=first.get("Kampus_Utama"),
    )
    for row in rows:
        barcode = row.get("No_Barcode")
        if not barcode:
            continue
        status = ON_LOAN if row.get("Status_Kembali") == "N" else AVAILABLE
        detail.copies.append(
            BookCopy(
                barcode=str(barcode),
                location=str(row.get("Lokasi") or ""),
                campus=row.get("Kampus_Lokasi"),
                availability=status,
            )
        )
    return detail


def _row_to_book(row: Dict[str, Any]) -> Book:
    return Book(
        book_id=str(row.get("ID_Buku")),
        title=str(row.get("Judul_Buku") or ""),
        author=str(row.get("Pengarang") or ""),
        year=row.get("Tahun"),
    )


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None
