from __future__ import annotations

from types import SimpleNamespace

from chatrelay.utils.discord_utils import MESSAGE_LIMIT, display_name, is_admin, split_message


def test_short_text_is_a_single_chunk() -> None:
    assert split_message("  hello  ") == ["hello"]
    assert split_message("") == []
    assert split_message("   \n ") == []


def test_long_text_breaks_on_newline_or_space() -> None:
    text = "alpha beta\ngamma delta"
    assert split_message(text, limit=12) == ["alpha beta", "gamma delta"]
    assert split_message("one two three four", limit=9) == ["one two", "three", "four"]


def test_unbroken_text_is_cut_hard_at_the_limit() -> None:
    chunks = split_message("x" * (MESSAGE_LIMIT * 2 + 5))
    assert [len(chunk) for chunk in chunks] == [MESSAGE_LIMIT, MESSAGE_LIMIT, 5]


def test_chunks_preserve_all_words() -> None:
    text = " ".join(f"w{idx}" for idx in range(1500))
    chunks = split_message(text)
    assert all(len(chunk) <= MESSAGE_LIMIT for chunk in chunks)
    assert " ".join(chunks).split() == text.split()


def test_display_name_and_admin_checks() -> None:
    member = SimpleNamespace(display_name="Alice", name="alice", id=1, guild_permissions=SimpleNamespace(administrator=True))
    assert display_name(member) == "Alice"
    assert display_name(SimpleNamespace(display_name="", global_name=None, name="bob")) == "bob"
    assert display_name(SimpleNamespace(id=7)) == "7"
    assert is_admin(member) is True
    assert is_admin(SimpleNamespace(guild_permissions=SimpleNamespace(administrator=False))) is False
    assert is_admin(SimpleNamespace()) is False
