from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from shellpilot.terminal.keys import (
    KEY_MAP,
    SENTINEL_PREFIX,
    build_sentinel_command,
    extract_command_output,
    find_marker,
    new_marker,
    strip_ansi,
    translate_keys,
    validate_marker,
)

pytestmark = pytest.mark.critical_regression


def test_translate_keys_maps_names_and_joins_without_separator() -> None:
    assert translate_keys("y Enter") == "y\r"
    assert translate_keys("Ctrl+C") == "\x03"
    assert translate_keys("ls Space -la Enter") == "ls -la\r"
    assert translate_keys("  Up   Up Enter ") == "\x1b[A\x1b[A\r"


def test_translate_keys_is_case_sensitive() -> None:
    assert translate_keys("enter") == "enter"
    assert translate_keys("") == ""


def test_key_map_covers_control_and_navigation_keys() -> None:
    assert KEY_MAP["Ctrl+D"] == "\x04"
    assert KEY_MAP["Ctrl+Z"] == "\x1a"
    assert KEY_MAP["Tab"] == "\t"
    assert KEY_MAP["Escape"] == "\x1b"
    assert KEY_MAP["Backspace"] == "\x7f"
    assert KEY_MAP["Delete"] == "\x1b[3~"


def test_strip_ansi_removes_colour_title_and_carriage_returns() -> None:
    raw = "\x1b]0;user@box: ~\x07\x1b[1;32mok\x1b[0m\r\n\x1b[?2004hprompt$ "
    assert strip_ansi(raw) == "ok\nprompt$ "


def test_strip_ansi_drops_orphaned_csi_fragments() -> None:
    assert strip_ansi("[?2004lfile1\n") == "file1\n"
    assert strip_ansi("[0mdone") == "done"


def test_strip_ansi_keeps_plain_brackets() -> None:
    assert strip_ansi("[INFO] started\narray[0]") == "[INFO] started\narray[0]"


@given(st.text(alphabet=st.characters(exclude_characters="\x1b\x9b\r["), max_size=200))
def test_strip_ansi_is_identity_on_plain_text(text: str) -> None:
    assert strip_ansi(text) == text


@given(st.text(max_size=200))
def test_strip_ansi_never_leaves_carriage_returns(text: str) -> None:
    cleaned = strip_ansi(text)
    assert "\r" not in cleaned


@given(st.lists(st.sampled_from(sorted(KEY_MAP)), min_size=1, max_size=10))
def test_translate_keys_concatenates_each_mapped_token(tokens: list[str]) -> None:
    assert translate_keys(" ".join(tokens)) == "".join(KEY_MAP[token] for token in tokens)


def test_new_marker_is_unique_and_shell_safe() -> None:
    first, second = new_marker(), new_marker()
    assert first != second
    assert first.startswith(SENTINEL_PREFIX)
    assert validate_marker(first) == first


def test_sentinel_command_appends_echo_and_newline() -> None:
    assert build_sentinel_command("ls", "__DONE__") == "ls; echo __DONE__\n"
    with pytest.raises(ValueError):
        build_sentinel_command("ls", "bad marker; rm")


def test_marker_must_start_a_line() -> None:
    echoed = "ls; echo __DONE__\nfile1\n"
    assert find_marker(echoed, "__DONE__") == -1
    complete = echoed + "__DONE__\n"
    index = find_marker(complete, "__DONE__")
    assert index == len(echoed) - 1
    assert extract_command_output(complete, index) == "file1"


def test_extract_command_output_skips_echoed_first_line() -> None:
    cleaned = "ls\nfile1\nfile2\n__DONE__\n"
    index = find_marker(cleaned, "__DONE__")
    assert extract_command_output(cleaned, index) == "file1\nfile2"
