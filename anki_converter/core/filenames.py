"""Deck names → file names that are safe on Windows, macOS and Linux.

WHY: Output files are named after decks, and deck names are free text:
"Japanese::Kanji", "Q&A: part 1/2", "CON". Every host that writes a file
(CLI into a directory, HTTP Content-Disposition) needs the same safe,
predictable name.

HOW: One cleaning pass (control chars, "::", invalid chars, runs of the
replacement, edge trimming, reserved names, truncation) repeated until
the name stops changing, so the result is a fixed point.

RULES:
- Never empty: falls back to "deck"
- Base name (without extension) is at most max_base_length characters
- No / \\ : * ? " < > | and no C0, DEL or C1 control characters
- No leading/trailing whitespace, dots, dashes or replacement characters
- "::" becomes " - " before individual colons are replaced
- Windows reserved names (CON, PRN, AUX, NUL, COM1-9, LPT1-9), alone or
  before a dot, get "_file" appended to the reserved part
- Truncation breaks at a space, dash or replacement char when one falls in
  the last 30% of the allowed length
- Non-ASCII letters are kept
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional

from anki_converter.core.output import Deck

DEFAULT_BASE = "deck"
DEFAULT_EXTENSION = ".json"
MAX_BASE_LENGTH = 200
MIN_BASE_LENGTH = 8
MAX_FILENAME_LENGTH = 255

INVALID_CHARS = '/\\:*?"<>|'
_INVALID_RE = re.compile(r'[/\\:*?"<>|]')
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")

RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + ["COM{}".format(i) for i in range(1, 10)]
    + ["LPT{}".format(i) for i in range(1, 10)]
)

# Bound on cleaning passes; two are enough in practice
_MAX_PASSES = 8


def _check_replacement(replacement_char: str) -> None:
    if (
        len(replacement_char) != 1
        or replacement_char in INVALID_CHARS
        or _CONTROL_RE.match(replacement_char)
        or replacement_char.isspace()
        or replacement_char == "."
    ):
        raise ValueError(
            "replacement_char must be one printable character other than "
            "whitespace, '.', or any of {}; got {!r}".format(INVALID_CHARS, replacement_char)
        )


def _trim(text: str, replacement_char: str) -> str:
    edge_chars = ".-" + replacement_char
    previous = None
    while previous != text:
        previous = text
        text = text.strip().strip(edge_chars)
    return text


def _unreserve(text: str) -> str:
    head, dot, tail = text.partition(".")
    if head.upper() in RESERVED_NAMES:
        return "{}_file{}{}".format(head, dot, tail)
    return text


def _truncate(text: str, max_length: int, replacement_char: str) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    break_at = max(cut.rfind(" "), cut.rfind("-"), cut.rfind(replacement_char))
    if break_at > max_length * 0.7:
        cut = cut[:break_at]
    return cut


def _clean_once(text: str, replacement_char: str, max_base_length: int) -> str:
    text = _CONTROL_RE.sub("", text)
    text = text.replace("::", " - ")
    text = _INVALID_RE.sub(replacement_char, text)
    text = re.sub("{}{{2,}}".format(re.escape(replacement_char)), replacement_char, text)
    text = _trim(text, replacement_char)
    text = _unreserve(text)
    text = _truncate(text, max_base_length, replacement_char)
    return _trim(text, replacement_char) or DEFAULT_BASE


def sanitize(
    name: Optional[str],
    replacement_char: str = "_",
    add_extension: bool = True,
    extension: str = DEFAULT_EXTENSION,
    max_base_length: int = MAX_BASE_LENGTH,
) -> str:
    """Turn a deck name into a safe file name.

    Args:
        name: Deck name; None or blank yields the default base "deck".
        replacement_char: Substitute for invalid characters.
        add_extension: Append extension to the cleaned base.
        extension: Extension to append, including the dot.
        max_base_length: Ceiling on the base name length (>= 8).

    Raises:
        ValueError: If replacement_char or max_base_length is unusable.
    """
    _check_replacement(replacement_char)
    if max_base_length < MIN_BASE_LENGTH:
        raise ValueError(
            "max_base_length must be at least {}, got {}".format(MIN_BASE_LENGTH, max_base_length)
        )

    text = name or ""
    for _ in range(_MAX_PASSES):
        cleaned = _clean_once(text, replacement_char, max_base_length)
        if cleaned == text:
            break
        text = cleaned

    return text + extension if add_extension else text


def collection_filename(
    name: Optional[str] = None,
    deck_count: Optional[int] = None,
    extension: str = DEFAULT_EXTENSION,
) -> str:
    """Name for a whole collection; timestamped when no name is given."""
    if name and name.strip():
        return sanitize(name, extension=extension)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    suffix = "_{}decks".format(deck_count) if deck_count else ""
    return sanitize("anki_collection_{}{}".format(stamp, suffix), extension=extension)


def download_filename(
    decks: List[Deck],
    custom_name: Optional[str] = None,
    source_filename: Optional[str] = None,
) -> str:
    """Pick the output file name for a conversion result.

    Priority: custom name, then the only top-level deck's name, then the
    source file's stem, then a timestamped collection name.
    """
    if custom_name and custom_name.strip():
        return sanitize(custom_name)
    if len(decks) == 1 and decks[0].name:
        return sanitize(decks[0].name)
    if source_filename and source_filename.strip():
        stem = re.sub(r"\.[^.]+$", "", source_filename.strip())
        return sanitize(stem)
    return collection_filename(deck_count=len(decks))


def is_valid_filename(filename: str) -> bool:
    """True when filename is usable as-is on all major operating systems."""
    if not filename or len(filename) > MAX_FILENAME_LENGTH:
        return False
    if _INVALID_RE.search(filename) or _CONTROL_RE.search(filename):
        return False
    base = re.sub(r"\.[^.]*$", "", filename)
    if base.upper() in RESERVED_NAMES or filename.partition(".")[0].upper() in RESERVED_NAMES:
        return False
    if filename != filename.strip() or filename.endswith("."):
        return False
    return True
