"""Unit tests for terminal pattern helpers."""

from respawn_supervisor.patterns import (
    extract_token_count,
    has_prompt_pattern,
    has_working_pattern,
    is_completion_message,
    looks_like_elicitation,
    looks_like_selection_menu,
    strip_ansi,
)


def test_strip_ansi_removes_color_and_cursor_sequences():
    raw = "\x1b[32m✻ Worked for 2m 46s\x1b[0m\x1b[2K\x1b]0;title\x07"
    assert strip_ansi(raw) == "✻ Worked for 2m 46s"


def test_completion_message_requires_worked_for_prefix():
    assert is_completion_message("✻ Worked for 2m 46s")
    assert is_completion_message("worked for 1h 5m 3s")
    assert is_completion_message("Worked for 12s")
    assert not is_completion_message("wait for 5s before retrying")
    assert not is_completion_message("run for 2m")


def test_working_patterns_cover_words_and_spinners():
    assert has_working_pattern("✻ Thinking… (esc to interrupt)")
    assert has_working_pattern("⠋ compiling")
    assert not has_working_pattern("all done, nothing to see")


def test_prompt_patterns():
    assert has_prompt_pattern("❯ ")
    assert has_prompt_pattern("⏵⏵ accept edits on")
    assert has_prompt_pattern("↵ send")
    assert not has_prompt_pattern("plain text")


def test_selection_menu_detection():
    menu = (
        "Would you like to proceed?\n"
        "❯ 1. Yes, and auto-accept edits\n"
        "  2. Yes, and manually approve edits\n"
        "  3. No, keep planning\n"
    )
    assert looks_like_selection_menu(menu)
    assert not looks_like_selection_menu("1. first point\nsome prose")


def test_elicitation_detection():
    assert looks_like_elicitation("Which database should I use?\n> ")
    assert not looks_like_elicitation("Done.\n❯ ")


def test_extract_token_count_suffixes():
    assert extract_token_count("123.4k tokens") == 123400
    assert extract_token_count("1.5M tokens") == 1500000
    assert extract_token_count("842 tokens") == 842
    assert extract_token_count("no count here") is None
