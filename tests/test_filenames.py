"""Tests for deck name → file name sanitization.

WHY: Deck names are free text typed in Anki. A name like "Q&A: 1/2" or
"CON" written straight to disk breaks on at least one OS, and a file
name that changes when sanitized twice makes downloads unpredictable.

HOW: Literal input/output pairs for each cleaning rule, then property
style checks (fixed point, validity) over a list of hostile names.

RULES:
- Output is never empty and always passes is_valid_filename()
- sanitize(sanitize(x)) == sanitize(x) on the base name
"""

from __future__ import annotations

import re

import pytest

from anki_converter.core.filenames import (
    collection_filename,
    download_filename,
    is_valid_filename,
    sanitize,
)
from anki_converter.core.output import Deck

HOSTILE_NAMES = [
    "Japanese::Kanji",
    "Q&A: part 1/2",
    "CON",
    "lpt1.backup",
    "..hidden..",
    "a\x00b\x07c\x9f",
    '<>:"/\\|?*',
    "  spaced  out  ",
    "--dashes--",
    "日本語::漢字",
    "x" * 500,
    "word " * 100,
    "trailing.",
]


class TestSanitize:

    @pytest.mark.parametrize("name,expected", [
        ("Japanese::Kanji", "Japanese - Kanji.json"),
        ("Q&A: part 1/2", "Q&A_ part 1_2.json"),
        ("a//b", "a_b.json"),
        ("a\x00b\x07c", "abc.json"),
        ("..hidden..", "hidden.json"),
        ("日本語::漢字", "日本語 - 漢字.json"),
        ("Émile's 🎌 deck", "Émile's 🎌 deck.json"),
    ])
    def test_cleaning(self, name, expected):
        assert sanitize(name) == expected

    @pytest.mark.parametrize("name", [None, "", "   ", "???", "..."])
    def test_falls_back_to_default(self, name):
        assert sanitize(name) == "deck.json"

    @pytest.mark.parametrize("name,expected", [
        ("CON", "CON_file.json"),
        ("nul", "nul_file.json"),
        ("com3.notes", "com3_file.notes.json"),
        ("CONSOLE", "CONSOLE.json"),
    ])
    def test_reserved_names(self, name, expected):
        assert sanitize(name) == expected

    def test_truncates_at_word_boundary(self):
        assert sanitize("word " * 100, add_extension=False, max_base_length=20) == "word word word word"

    def test_hard_truncation_without_break(self):
        assert sanitize("x" * 300, add_extension=False) == "x" * 200

    def test_extension_options(self):
        assert sanitize("notes", add_extension=False) == "notes"
        assert sanitize("notes", extension=".txt") == "notes.txt"

    def test_custom_replacement(self):
        assert sanitize("a/b", replacement_char="~") == "a~b.json"

    @pytest.mark.parametrize("replacement", ["", "ab", "/", " ", ".", "\x01"])
    def test_bad_replacement_rejected(self, replacement):
        with pytest.raises(ValueError):
            sanitize("deck", replacement_char=replacement)

    def test_tiny_length_rejected(self):
        with pytest.raises(ValueError):
            sanitize("deck", max_base_length=7)


class TestProperties:

    @pytest.mark.parametrize("name", HOSTILE_NAMES)
    def test_fixed_point(self, name):
        once = sanitize(name, add_extension=False)
        assert sanitize(once, add_extension=False) == once

    @pytest.mark.parametrize("name", HOSTILE_NAMES)
    def test_always_valid(self, name):
        result = sanitize(name)
        assert result
        assert is_valid_filename(result)
        assert len(result) <= 200 + len(".json")

    @pytest.mark.parametrize("filename,valid", [
        ("deck.json", True),
        ("日本語.json", True),
        ("CON.json", False),
        ("con", False),
        ("a/b.json", False),
        ("", False),
        (" leading.json", False),
        ("trailing.", False),
        ("x" * 256, False),
    ])
    def test_is_valid_filename(self, filename, valid):
        assert is_valid_filename(filename) is valid


class TestDownloadNames:

    def test_collection_filename_timestamped(self):
        name = collection_filename()
        assert re.fullmatch(r"anki_collection_\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.json", name)

    def test_collection_filename_with_count(self):
        assert collection_filename(deck_count=3).endswith("_3decks.json")

    def test_collection_filename_with_name(self):
        assert collection_filename("My/Collection") == "My_Collection.json"

    def test_custom_name_wins(self):
        assert download_filename([Deck(name="Spanish")], custom_name="Export: final") == "Export_ final.json"

    def test_single_top_level_deck(self):
        decks = [Deck(name="Spanish", subdecks=[Deck(name="Verbs")])]
        assert download_filename(decks, source_filename="whatever.apkg") == "Spanish.json"

    def test_source_stem_for_many_decks(self):
        decks = [Deck(name="A"), Deck(name="B")]
        assert download_filename(decks, source_filename="japanese.apkg") == "japanese.json"

    def test_timestamp_fallback(self):
        name = download_filename([Deck(name="A"), Deck(name="B")])
        assert name.startswith("anki_collection_")
        assert name.endswith("_2decks.json")
