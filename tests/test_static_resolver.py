import json

from pustakabot.response_store import ResponseStore
from pustakabot.static_resolver import StaticResolver


def make_resolver(tmp_path, table):
    path = tmp_path / "responses.json"
    path.write_text(json.dumps(table), encoding="utf-8")
    return StaticResolver(ResponseStore(path))


def test_exact_match_beats_earlier_partial_key(tmp_path):
    resolver = make_resolver(
        tmp_path,
        {
            "system_commands": {},
            "flow_messages": {},
            "general_services": {"jam": "partial", "jam buka": "exact"},
        },
    )

    assert resolver.resolve("jam buka") == "exact"
    assert resolver.resolve("kapan jam operasional?") == "partial"


def test_category_order_is_fixed(tmp_path):
    resolver = make_resolver(
        tmp_path,
        {
            "academic_services": {"skripsi": "academic"},
            "general_services": {"skripsi": "general"},
            "system_commands": {},
            "flow_messages": {},
        },
    )

    assert resolver.resolve("skripsi") == "general"


def test_single_character_keys_only_match_exactly(tmp_path):
    resolver = make_resolver(
        tmp_path,
        {"system_commands": {}, "flow_messages": {}, "general_services": {"3": "jam buka"}},
    )

    assert resolver.resolve("3") == "jam buka"
    assert resolver.resolve("ruang 3 lantai") is None


def test_flow_messages_are_never_matched(tmp_path):
    resolver = make_resolver(
        tmp_path,
        {"system_commands": {}, "flow_messages": {"welcome_message": "x"}, "general_services": {}},
    )

    assert resolver.resolve("welcome_message") is None


def test_empty_input_matches_nothing(tmp_path):
    resolver = make_resolver(tmp_path, {"general_services": {"wifi": "x"}})

    assert resolver.resolve("") is None


def test_static_keywords_skip_numbers_and_short_keys(tmp_path):
    resolver = make_resolver(
        tmp_path,
        {
            "system_commands": {"menu": "m"},
            "flow_messages": {},
            "general_services": {"2": "nim", "10": "x", "a": "y", "wifi": "w"},
            "member_services": {"denda": "d"},
        },
    )

    assert resolver.static_keywords() == ["wifi", "denda"]
