import asyncio

from conftest import Ticker
from pustakabot.dialogue import Intent, SenderLocks, classify_intent, merge_unique_books
from pustakabot.gemini_client import FatalLLMError
from pustakabot.replies import MultiMessage, NoReply, SingleMessage
from pustakabot.session_store import SessionState

SENDER = "6281234567890"


def send(engine, text, sender=SENDER, name="Budi"):
    return asyncio.run(engine.handle(sender, text, name))


def state_of(engine, sender=SENDER):
    return engine.sessions.get(sender).state


def start(engine, sender=SENDER):
    """Open a session so the next message is dispatched instead of greeted."""
    send(engine, "Hi", sender=sender)


def test_new_sender_gets_greeting_and_menu(make_engine, store):
    engine = make_engine()

    reply = send(engine, "Hi", name="Budi")

    assert isinstance(reply, MultiMessage)
    assert len(reply.texts) == 2
    assert reply.texts[0].startswith("Halo *Budi*! ")
    assert reply.texts[1] == store.category("system_commands")["menu"]
    assert state_of(engine) == SessionState.MAIN_MENU


def test_greeting_hides_phone_number_names(make_engine):
    engine = make_engine()

    reply = send(engine, "Hi", name="+62812345")

    assert reply.texts[0].startswith("Halo *Pemustaka*! ")


def test_menu_is_idempotent_from_any_state(make_engine, store):
    engine = make_engine()
    start(engine)
    send(engine, "1")
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID

    first = send(engine, "MENU")
    second = send(engine, "menu")

    assert first == second == SingleMessage(store.category("system_commands")["menu"])
    assert state_of(engine) == SessionState.MAIN_MENU


def test_end_deletes_session(make_engine, store):
    engine = make_engine()
    start(engine)

    reply = send(engine, "end")

    assert reply == SingleMessage(store.flow_message("session_end_message", ""))
    assert SENDER not in engine.sessions
    assert isinstance(send(engine, "halo"), MultiMessage)


def test_hybrid_search_lists_matches_and_stays_waiting(make_engine):
    engine = make_engine()
    start(engine)

    prompt = send(engine, "1")
    reply = send(engine, "Harry Potter")

    assert "Judul Buku" in prompt.text
    assert isinstance(reply, SingleMessage)
    assert "B001" in reply.text and "B002" in reply.text
    assert reply.text.count("ID: *") == 2
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_valid_book_id_returns_detail_and_main_menu(make_engine):
    engine = make_engine()
    start(engine)
    send(engine, "1")

    reply = send(engine, "B100")
    follow_up = send(engine, "2")

    assert "DETAIL BUKU" in reply.text
    assert "Rak 3A" in reply.text
    assert "NIM" in follow_up.text
    assert state_of(engine) == SessionState.WAITING_FOR_MEMBER_ID


def test_book_id_merged_search_dedupes_authors_and_titles(make_engine, catalog):
    engine = make_engine()
    start(engine)
    send(engine, "1")

    reply = send(engine, "Rowling")

    assert reply.text.count("ID: *B001*") == 1
    assert reply.text.count("ID: *B002*") == 1
    assert ("search_by_title", "Rowling") in catalog.calls
    assert ("search_by_author", "Rowling") in catalog.calls


def test_book_id_short_unknown_input_is_too_short(make_engine):
    engine = make_engine()
    start(engine)
    send(engine, "1")

    reply = send(engine, "zq")

    assert "terlalu pendek" in reply.text
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_book_id_unknown_input_is_not_found(make_engine):
    engine = make_engine()
    start(engine)
    send(engine, "1")

    reply = send(engine, "Zzzzzz")

    assert "Tidak Ditemukan" in reply.text
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_book_id_one_reprompts(make_engine, store):
    engine = make_engine()
    start(engine)
    send(engine, "1")

    reply = send(engine, "1")

    assert reply == SingleMessage(store.flow_message("prompt_book_id_again", ""))


def test_catalog_outage_replies_search_error_and_keeps_state(make_engine, catalog, store):
    engine = make_engine()
    start(engine)
    send(engine, "1")
    catalog.failing.update({"get_detail"})

    reply = send(engine, "B100")

    assert reply == SingleMessage(store.flow_message("search_error", ""))
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_one_failing_search_leg_is_tolerated(make_engine, catalog):
    engine = make_engine()
    start(engine)
    send(engine, "1")
    catalog.failing.add("search_by_author")

    reply = send(engine, "Harry")

    assert "B001" in reply.text


def test_both_failing_search_legs_reply_search_error(make_engine, catalog, store):
    engine = make_engine()
    start(engine)
    send(engine, "1")
    catalog.failing.update({"search_by_title", "search_by_author"})

    reply = send(engine, "Harry")

    assert reply.text == store.flow_message("search_error", "")


def test_criteria_mode_title_flow(make_engine):
    engine = make_engine(mode="criteria")
    start(engine)

    send(engine, "1")
    assert state_of(engine) == SessionState.WAITING_FOR_CRITERIA
    send(engine, "judul")
    assert state_of(engine) == SessionState.WAITING_FOR_TITLE

    short = send(engine, "ha")
    assert "minimal 3" in short.text
    missing = send(engine, "Laskar Pelangi")
    assert "tidak ditemukan" in missing.text
    assert state_of(engine) == SessionState.WAITING_FOR_TITLE

    found = send(engine, "Harry")
    assert "HASIL PENCARIAN BUKU" in found.text
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_criteria_mode_author_flow_and_invalid_choice(make_engine, store):
    engine = make_engine(mode="criteria")
    start(engine)
    send(engine, "1")

    invalid = send(engine, "3")
    assert invalid.text == store.flow_message("invalid_criteria", "")
    assert state_of(engine) == SessionState.WAITING_FOR_CRITERIA

    send(engine, "2")
    assert state_of(engine) == SessionState.WAITING_FOR_AUTHOR
    short = send(engine, "p")
    assert "minimal 2" in short.text

    found = send(engine, "Pramoedya")
    assert "HASIL PENCARIAN PENGARANG" in found.text
    assert "Pengarang: *Pramoedya Ananta Toer*" in found.text
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_ID


def test_universal_mode_uses_normalized_input(make_engine, catalog):
    catalog.details["b100"] = catalog.details["B100"]
    engine = make_engine(mode="universal")
    start(engine)
    send(engine, "1")

    reply = send(engine, "  B100 ")

    assert ("search_universal", "b100") in catalog.calls
    assert ("get_detail", "b100") in catalog.calls
    assert "DETAIL BUKU" in reply.text


def test_universal_mode_not_found_and_too_short(make_engine):
    engine = make_engine(mode="universal")
    start(engine)
    send(engine, "1")

    missing = send(engine, "kalkulus")
    short = send(engine, "xy")

    assert "tidak ditemukan buku dengan kata kunci atau ID" in missing.text
    assert "terlalu pendek" in short.text
    assert state_of(engine) == SessionState.WAITING_FOR_BOOK_INPUT


def test_member_id_format_error_keeps_state(make_engine, store):
    engine = make_engine()
    start(engine)
    send(engine, "2")

    reply = send(engine, "abc123")

    assert reply.text == store.flow_message("member_id_format_error", "")
    assert state_of(engine) == SessionState.WAITING_FOR_MEMBER_ID


def test_member_lookup_found_and_not_found(make_engine):
    engine = make_engine()
    start(engine)
    send(engine, "cek pinjaman saya")
    assert state_of(engine) == SessionState.WAITING_FOR_MEMBER_ID

    missing = send(engine, "999")
    assert "tidak ditemukan" in missing.text
    assert state_of(engine) == SessionState.WAITING_FOR_MEMBER_ID

    found = send(engine, "41520010001")
    assert "Siti Aminah" in found.text
    assert "1 Buku" in found.text
    assert state_of(engine) == SessionState.MAIN_MENU


def test_static_keyword_reply_in_main_menu(make_engine, store, completer):
    engine = make_engine()
    start(engine)

    reply = send(engine, "3")

    assert reply.text == store.category("general_services")["3"]
    assert completer.calls == []


def test_single_unknown_character_gets_invalid_selection_and_menu(make_engine, store, completer):
    engine = make_engine()
    start(engine)

    reply = send(engine, "9")

    assert reply.text.startswith(store.flow_message("invalid_menu_selection", ""))
    assert reply.text.endswith(store.category("system_commands")["menu"])
    assert completer.calls == []


def test_free_text_goes_to_llm(make_engine, completer):
    engine = make_engine()
    start(engine)

    reply = send(engine, "Apakah perpustakaan punya ruang diskusi untuk kelompok?")

    assert reply.text == "Untuk informasi tersebut, silakan ketik angka *3*."
    assert completer.calls[0]["user_text"] == "Apakah perpustakaan punya ruang diskusi untuk kelompok?"


def test_llm_failure_replies_unavailable(make_engine, completer, store):
    completer.outcomes = [FatalLLMError("quota")]
    engine = make_engine()
    start(engine)

    reply = send(engine, "Bagaimana cara meminjam ruang seminar di kampus?")

    assert reply.text == store.flow_message("ai_unavailable", "")


def test_cooldown_drops_second_message(make_engine):
    engine = make_engine(clock=Ticker(step=0.5))
    start(engine)

    assert send(engine, "menu") == NoReply()


def test_rate_limit_bans_once_then_silent(make_engine, store):
    engine = make_engine(clock=Ticker(step=2.0))
    replies = [send(engine, "menu") for _ in range(25)]

    assert all(not isinstance(reply, NoReply) for reply in replies[:22])
    assert replies[22] == SingleMessage(store.flow_message("ban_notice", ""))
    assert replies[23] == NoReply()
    assert replies[24] == NoReply()


def test_too_long_message_keeps_state(make_engine):
    engine = make_engine()
    start(engine)
    send(engine, "2")

    reply = send(engine, "a" * 301)

    assert "301" in reply.text and "300" in reply.text
    assert state_of(engine) == SessionState.WAITING_FOR_MEMBER_ID


def test_unknown_state_intent_pair_resets(make_engine, store):
    engine = make_engine()
    start(engine)
    engine._table.pop((SessionState.MAIN_MENU, Intent.ANY))

    reply = send(engine, "apa saja")

    assert reply.text == store.flow_message("invalid_menu_selection", "")
    assert state_of(engine) == SessionState.MAIN_MENU


def test_classify_intent():
    assert classify_intent("1") is Intent.CHOICE_1
    assert classify_intent("2") is Intent.CHOICE_2
    assert classify_intent("judul") is Intent.TITLE
    assert classify_intent("pengarang") is Intent.AUTHOR
    assert classify_intent("status pinjaman") is Intent.LOAN
    assert classify_intent("halo") is Intent.ANY


def test_merge_unique_books_keeps_first_seen_order():
    from conftest import HARRY_1, HARRY_2, PRAMOEDYA

    merged = merge_unique_books([[HARRY_2, HARRY_1], [HARRY_1, PRAMOEDYA]])

    assert [book.book_id for book in merged] == ["B002", "B001", "B100"]


def test_sender_locks_serialize_and_clean_up():
    locks = SenderLocks()
    order = []

    async def worker(tag, delay):
        async with locks.hold("a"):
            order.append(f"{tag}-in")
            await asyncio.sleep(delay)
            order.append(f"{tag}-out")

    async def scenario():
        await asyncio.gather(worker("first", 0.01), worker("second", 0))

    asyncio.run(scenario())

    assert order == ["first-in", "first-out", "second-in", "second-out"]
    assert len(locks) == 0


def test_punctuated_keyword_resolves_statically(make_engine, completer, store):
    engine = make_engine()
    start(engine)

    reply = send(engine, "jam buka?")

    assert reply.text == store.category("general_services")["jam buka"]
    assert completer.calls == []
