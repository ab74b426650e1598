"""WhatsApp-flavoured text rendering for catalog results.

All book/member replies are built here so both the id-lookup states and the
search states render identical detail and list bubbles.
"""

from typing import List, Optional

from .catalog import Book, BookDetail, Member

MENU_HINT = "Ketik *MENU* untuk layanan lain."
SEPARATOR = "--------------------"


def _or_dash(value: object) -> str:
    if value is None or value == "":
        return "-"
    return str(value)


def format_book_detail(detail: BookDetail) -> str:
    """Purpose: Render full bibliographic detail and per-copy availability.
    Inputs/Outputs: Input is a BookDetail; output is one multi-section message.
    Side Effects / State: None; pure function.
    Dependencies: Used by every state that resolves a book id.
    Failure Modes: Missing optional fields render as "-".
    If Removed: Id lookups have no way to show where a copy is shelved.
    Testing Notes: A detail without copies shows the "not registered" line.
    """
    lines = [
        "📖 *DETAIL BUKU PERPUSTAKAAN*",
        "",
        f"*Judul*: {detail.title}",
        f"*Pengarang*: {detail.author}",
        f"*Penerbit*: {_or_dash(detail.publisher)}",
        f"*Tahun*: {_or_dash(detail.year)}",
        f"*Bahasa*: {_or_dash(detail.language)}",
        f"*ISBN*: {_or_dash(detail.isbn)}",
        f"*Call Number*: {_or_dash(detail.call_number)}",
        f"*Kolasi*: {_or_dash(detail.collation)}",
        f"*Kampus*: {_or_dash(detail.campus)}",
        "",
        "📦 *STATUS KETERSEDIAAN (EKSEMPLAR)*",
    ]
    if detail.copies:
        for index, copy in enumerate(detail.copies, start=1):
            lines.extend(
                [
                    "",
                    f"*Eksemplar ke-{index}*",
                    f"*Barcode:* {copy.barcode}",
                    f"*Lokasi:* {copy.location} ({copy.campus or ''})",
                    f"*Status:* {copy.availability}",
                ]
            )
    else:
        lines.extend(["", "⚠️ _Data fisik/barcode buku ini belum terdaftar._"])
    lines.extend(["", MENU_HINT])
    return "\n".join(lines)


def format_book_list(
    books: List[Book],
    keyword: str,
    heading: str = "📚 *HASIL PENCARIAN BUKU*",
    limit: int = 10,
    total: Optional[int] = None,
    author_first: bool = False,
) -> str:
    """Purpose: Render a numbered search-result list with a follow-up hint.
    Inputs/Outputs: Inputs are books, the echoed keyword, a heading, the display cap,
        the total before capping, and the field order; output is one message.
    Side Effects / State: None; pure function.
    Dependencies: Used by title, author, universal, and merged searches.
    Failure Modes: Callers must pass a non-empty list (the hint quotes the first id).
    If Removed: Each search state would carry its own drifting copy of this layout.
    Testing Notes: A list at the cap shows the "be more specific" footer; a merged
        list larger than the cap shows "Menampilkan 10 dari N hasil".
    """
    shown = books[:limit]
    lines = [heading, f'Kata kunci: _"{keyword}"_', ""]
    for index, book in enumerate(shown, start=1):
        lines.append(f"{index}.")
        if author_first:
            lines.append(f"Pengarang: *{book.author}*")
            lines.append(f"Judul: {book.title}")
        else:
            lines.append(f"Judul: *{book.title}*")
            lines.append(f"Pengarang: {book.author}")
        lines.append(f"Tahun: {_or_dash(book.year)}")
        lines.append(f"ID: *{book.book_id}*")
        lines.append(SEPARATOR)
        lines.append("")
    if total is not None and total > limit:
        lines.append(f"_Menampilkan {limit} dari {total} hasil._")
    elif len(shown) >= limit:
        lines.append(
            f"_⚠️ Menampilkan {limit} buku terbaru. Jika buku yang dicari tidak ada, "
            "mohon ulangi pencarian dengan kata kunci yang lebih spesifik._"
        )
        lines.append("")
    lines.append(
        f"Silakan ketik *ID BUKU* di atas (misal: {shown[0].book_id}) untuk melihat detail & ketersediaan buku."
    )
    lines.append("Atau ketik *Judul/Pengarang Lain* untuk mencari ulang.")
    lines.append("")
    lines.append(MENU_HINT)
    return "\n".join(lines)


def format_member_status(member: Member) -> str:
    """Render a member profile and outstanding loans with due dates."""
    lines = [
        "👤 *INFO ANGGOTA & PEMINJAMAN*",
        "",
        f"Nama: *{member.name}*",
        f"NIM: {member.member_id}",
        "",
        f"📚 *Status Pinjaman: {len(member.loans)} Buku*",
    ]
    if member.loans:
        lines.append("_Daftar buku yang belum dikembalikan:_")
        for index, loan in enumerate(member.loans, start=1):
            due = loan.due_date.strftime("%d/%m/%Y") if loan.due_date else "-"
            lines.append("")
            lines.append(f"{index}. *{loan.title}*")
            lines.append(f"   🗓️ Tenggat: {due}")
        lines.append("")
        lines.append("⚠️ _Mohon kembalikan tepat waktu untuk menghindari denda._")
    else:
        lines.append("✅ _Tidak ada tanggungan peminjaman._")
    lines.append("")
    lines.append(MENU_HINT)
    return "\n".join(lines)


def too_short_reply(keyword: str, minimum: int, subject: str = "Kata kunci") -> str:
    return f'⚠️ {subject} *"{keyword}"* terlalu pendek. Harap masukkan minimal {minimum} huruf.'


def title_not_found_reply(keyword: str) -> str:
    return f'⚠️ Buku dengan kata kunci *"{keyword}"* tidak ditemukan.\nCoba kata kunci lain atau ketik *MENU*.'


def author_not_found_reply(keyword: str) -> str:
    return (
        f'⚠️ Tidak ditemukan buku karya pengarang *"{keyword}"* (20 tahun terakhir).\n'
        "Coba nama lain atau ketik *MENU*."
    )


def combined_not_found_reply(keyword: str) -> str:
    return (
        f'Mohon maaf, tidak ditemukan buku dengan kata kunci atau ID *"{keyword}"*.\n\n'
        "Silakan coba ketik judul atau pengarang lain."
    )


def book_id_not_found_reply(keyword: str) -> str:
    return (
        "⚠️ *Tidak Ditemukan*\n"
        f'Input *"{keyword}"* tidak valid sebagai ID Buku, Judul Buku maupun Pengarang.\n\n'
        "Silakan masukkan ID yang benar atau Judul buku yang lain."
    )


def member_not_found_reply(member_id: str) -> str:
    return f"⚠️ Data anggota dengan NIM *{member_id}* tidak ditemukan di sistem perpustakaan."
