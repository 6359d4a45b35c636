"""Tests for word counting, instruction parsing and input shape detection."""

import pytest

from app.core.text_utils import (
    clean_markup,
    count_words,
    extract_named_entities,
    find_lock_violations,
    has_expansion_instructions,
    is_position_list,
    is_table_separator,
    parse_expansion_instructions,
    split_position_fields,
)


def test_count_words():
    assert count_words("one two  three\n four") == 4
    assert count_words("") == 0
    assert count_words("   ") == 0


@pytest.mark.parametrize(
    "instructions,expected",
    [
        ("expand to 5000 words", True),
        ("Please lengthen this essay", True),
        ("increase by 50%", True),
        ("turn this into 3,000 words", True),
        ("make it more formal", False),
        ("Summarize in 200 words", False),
        ("reduce to 500 words", False),
        ("", False),
        (None, False),
    ],
)
def test_has_expansion_instructions(instructions, expected):
    assert has_expansion_instructions(instructions) is expected


def test_parse_explicit_word_count():
    target = parse_expansion_instructions("expand to 5000 words", 500)
    assert target.target_word_count == 5000
    assert target.source == "explicit"


def test_parse_explicit_word_count_with_separators():
    assert parse_expansion_instructions("expand to 5,000 words", 500).target_word_count == 5000
    assert parse_expansion_instructions("expand to 5k words", 500).target_word_count == 5000


def test_parse_percentage_increase():
    target = parse_expansion_instructions("increase by 150%", 400)
    assert target.target_word_count == 1000
    assert target.source == "percentage"


def test_parse_multiplier():
    assert parse_expansion_instructions("expand 3x", 400).target_word_count == 1200
    double = parse_expansion_instructions("double the length", 400)
    assert double.target_word_count == 800
    assert double.source == "multiplier"


def test_parse_defaults():
    small = parse_expansion_instructions("expand it", 300)
    assert (small.target_word_count, small.source) == (5000, "default-small")

    large = parse_expansion_instructions("expand it", 2000)
    assert (large.target_word_count, large.source) == (3000, "default-ratio")


def test_parse_defaults_are_configurable():
    target = parse_expansion_instructions("expand it", 300, default_target=2500)
    assert target.target_word_count == 2500


def test_table_separator():
    assert is_table_separator("|---|---|")
    assert is_table_separator("| :--- | ---: |")
    assert not is_table_separator("| a | b |")


def test_split_position_fields_ignores_outer_pipes():
    assert split_position_fields("| Smith | CEO | Acme |") == ["Smith", "CEO", "Acme"]
    assert split_position_fields("a|b") == ["a", "b"]


def test_is_position_list():
    assert is_position_list("a | b\nc | d\ne | f")
    assert is_position_list("| a | b |\n|---|---|\n| c | d |")
    assert not is_position_list("plain text\nmore plain text")
    assert not is_position_list("intro line\na | b\nc | d")
    assert not is_position_list("a | b")
    assert not is_position_list("")


def test_clean_markup():
    raw = "# Title\n\n**bold** and `code`"
    assert clean_markup(raw) == "Title\n\nbold and code"


def test_clean_markup_collapses_blank_runs():
    assert clean_markup("one\n\n\n\ntwo") == "one\n\ntwo"
    assert clean_markup("") == ""


def test_extract_named_entities_skips_sentence_starts():
    text = "Smith met Jones in Paris. The meeting was short."
    assert extract_named_entities(text) == ["Jones", "Paris"]


def test_lock_violations():
    report = find_lock_violations("Smith met Jones in 1999.", "Smith met someone in 2001.")
    assert not report.ok
    assert report.missing_entities == ["Jones"]
    assert report.missing_numbers == ["1999"]
    assert report.introduced_numbers == ["2001"]


def test_lock_violations_allow_new_numbers():
    report = find_lock_violations(
        "Smith met Jones in 1999.",
        "Smith met Jones in 1999, and 40% of voters agreed.",
        allow_new_numbers=True,
    )
    assert report.ok
    assert report.to_dict()["ok"] is True
