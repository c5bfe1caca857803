"""Tab-separated notes parser (Anki "Notes in Plain Text" exports).

WHY: Plenty of decks live as spreadsheets or Anki text exports: one note
per line, fields separated by tabs, optionally a trailing tags column.
There are no decks, note types or cards in such a file, so this parser
synthesizes them to produce the same NormalizedRecordSet the SQLite
reader does.

HOW: Leading ``#key:value`` header lines (written by Anki 2.1.55+) are
consumed first. The body then goes through a single-pass character
scanner that splits rows on CR, LF or CRLF and fields on tabs while
honouring backslash escapes. A tags column is taken from the header,
or inferred from the shape of the last column. A first row that reads
like column names supplies the field names.

RULES:
- Escapes: \\t, \\n, \\\\, backslash+TAB and backslash+line break keep the
  character inside the field; any other escape is kept verbatim
- Rows whose cells are all blank are skipped
- Only tab separators are supported; ``#separator:`` with anything else
  is a PARSE_ERROR
- Inferred tags column: every row has the same N >= 3 columns, and the
  last column is a whitespace-separated token list (no markup, no token
  longer than 100 chars) with at least one multi-token value, or empty
  in every row
- Without a #columns header, a first row of column names (Front, Back,
  Question, Answer, Tags, Field N, ...) is taken as the field names and
  not turned into a note; a column named Tag or Tags holds the tags
- One synthetic deck, one synthetic "Basic" note type sized to the
  field count (Front/Back for two fields, else Field 1..N)
- Short rows are padded with empty fields
"""

from __future__ import annotations

import logging
import math
import re
from typing import Dict, List, Optional, Tuple

from anki_converter import errors
from anki_converter.config import DEFAULT_DECK_NAME
from anki_converter.core.records import (
    Card,
    CollectionMeta,
    DeckInfo,
    FieldDef,
    Note,
    NoteType,
    NormalizedRecordSet,
    TemplateDef,
    split_tags,
)

logger = logging.getLogger(__name__)

SYNTHETIC_NOTE_TYPE_NAME = "Basic"
MAX_TAG_LENGTH = 100

_ESCAPES: Dict[str, str] = {
    "t": "\t",
    "n": "\n",
    "\\": "\\",
    "\t": "\t",
    "\n": "\n",
}

HEADER_KEYS = frozenset({
    "separator",
    "html",
    "tags column",
    "deck",
    "notetype",
    "columns",
    "guid column",
    "notetype column",
    "deck column",
})
"""File header keys Anki writes; other ``#...`` lines are data."""

_TAB_SEPARATOR_NAMES = frozenset({"tab", "\t", "\\t"})


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def _line_end(text: str, pos: int) -> Tuple[int, int]:
    """Return (end of line content, start of next line) from pos."""
    cr = text.find("\r", pos)
    lf = text.find("\n", pos)
    ends = [i for i in (cr, lf) if i != -1]
    if not ends:
        return len(text), len(text)
    end = min(ends)
    if text.startswith("\r\n", end):
        return end, end + 2
    return end, end + 1


def split_headers(text: str) -> Tuple[Dict[str, str], str]:
    """Strip leading ``#key:value`` header lines.

    Returns:
        (headers with lowercased keys, remaining body text)
    """
    headers: Dict[str, str] = {}
    pos = 0
    while text.startswith("#", pos):
        end, nxt = _line_end(text, pos)
        key, sep, value = text[pos + 1:end].partition(":")
        key = key.strip().lower()
        if not sep or key not in HEADER_KEYS:
            break
        headers[key] = value.strip()
        pos = nxt
    return headers, text[pos:]


def scan_rows(text: str) -> List[List[str]]:
    """Split text into rows of unescaped fields in a single pass."""
    rows: List[List[str]] = []
    row: List[str] = []
    buf: List[str] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            if nxt in _ESCAPES:
                buf.append(_ESCAPES[nxt])
                i += 2
            elif nxt == "\r":
                buf.append("\n")
                i += 3 if text.startswith("\r\n", i + 1) else 2
            else:
                buf.append(ch)
                i += 1
            continue
        if ch == "\t":
            row.append("".join(buf))
            buf = []
        elif ch == "\r" or ch == "\n":
            row.append("".join(buf))
            rows.append(row)
            buf, row = [], []
            if ch == "\r" and text.startswith("\n", i + 1):
                i += 1
        else:
            buf.append(ch)
        i += 1
    if buf or row:
        row.append("".join(buf))
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Column layout
# ---------------------------------------------------------------------------


def _looks_like_tags(value: str) -> bool:
    if "<" in value and ">" in value:
        return False
    return all(len(token) <= MAX_TAG_LENGTH for token in value.split())


def detect_tags_column(rows: List[List[str]]) -> Optional[int]:
    """Return the index of an inferred trailing tags column, or None."""
    if not rows:
        return None
    width = len(rows[0])
    if width < 3 or any(len(r) != width for r in rows):
        return None
    values = [r[-1] for r in rows]
    if not all(_looks_like_tags(v) for v in values):
        return None
    if all(not v.strip() for v in values):
        return width - 1
    if any(len(v.split()) > 1 for v in values):
        return width - 1
    return None


def default_field_names(count: int) -> List[str]:
    if count == 2:
        return ["Front", "Back"]
    return ["Field {}".format(i + 1) for i in range(count)]


_HEADER_NAME_RE = re.compile(
    r"^(?:front|back|question|answer|tags?|field\s*\d*.*|extra|hint|notes?|text)$",
    re.IGNORECASE,
)
MAX_HEADER_CELL_LENGTH = 100


def looks_like_header_row(row: List[str]) -> bool:
    """True when a first row names the columns instead of holding a note.

    Spreadsheet exports often start with a row such as ``Front  Back`` or
    ``Question  Answer  Tags``. Two-column rows need one recognised name,
    wider rows need 40% of their cells to be recognised names.
    """
    if not row:
        return False
    if any("<" in cell and ">" in cell for cell in row):
        return False
    if any(len(cell) > MAX_HEADER_CELL_LENGTH for cell in row):
        return False
    matches = sum(1 for cell in row if _HEADER_NAME_RE.match(cell.strip()))
    if matches == 0:
        return False
    threshold = 1 if len(row) <= 2 else math.ceil(len(row) * 0.4)
    return matches >= threshold


def _header_tags_column(headers: Dict[str, str]) -> Optional[int]:
    raw = headers.get("tags column")
    if raw is None:
        return None
    try:
        index = int(raw)
    except ValueError:
        raise errors.parse_error(
            "Header '#tags column:{}' is not a column number.".format(raw),
            source="#tags column",
        )
    if index < 1:
        raise errors.parse_error(
            "Header '#tags column:{}' must be 1 or greater.".format(raw),
            source="#tags column",
        )
    return index - 1


def _synthetic_note_type(name: str, field_names: List[str]) -> NoteType:
    fields = tuple(FieldDef(name=n, ordinal=i) for i, n in enumerate(field_names))
    question = "{{%s}}" % field_names[0] if field_names else ""
    answer = "{{FrontSide}}<hr id=answer>"
    if len(field_names) > 1:
        answer += "{{%s}}" % field_names[1]
    return NoteType(
        id=1,
        name=name,
        fields=fields,
        templates=(TemplateDef(name="Card 1", ordinal=0,
                               question_format=question, answer_format=answer),),
    )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class DelimitedTextParser:
    """Turns tab-separated text into a NormalizedRecordSet."""

    def __init__(self, deck_name: Optional[str] = None) -> None:
        self.deck_name = deck_name or DEFAULT_DECK_NAME
        self.warnings: List[str] = []

    def _warn(self, message: str, *args) -> None:
        text = message % args if args else message
        logger.warning(text)
        self.warnings.append(text)

    def parse(self, text: str) -> NormalizedRecordSet:
        headers, body = split_headers(text)

        separator = headers.get("separator")
        if separator is not None and separator.lower() not in _TAB_SEPARATOR_NAMES:
            raise errors.parse_error(
                "Unsupported separator '{}'; only tab-separated text is accepted.".format(separator),
                source="#separator",
            )
        for key in ("guid column", "notetype column", "deck column"):
            if key in headers:
                self._warn("Header '#%s' is not supported; the column is kept as a field", key)

        rows = [r for r in scan_rows(body) if any(cell.strip() for cell in r)]

        tags_index = _header_tags_column(headers)
        column_names: Optional[List[str]] = None
        header_row = False
        if "columns" in headers:
            column_names = [c.strip() for c in headers["columns"].split("\t")]
        elif rows and looks_like_header_row(rows[0]):
            column_names = [c.strip() for c in rows[0]]
            rows = rows[1:]
            header_row = True
            logger.info("First row looks like column names: %s", column_names)
        if column_names is not None and tags_index is None:
            lowered = [c.lower() for c in column_names]
            for name in ("tags", "tag"):
                if name in lowered:
                    tags_index = lowered.index(name)
                    break
        if tags_index is None and "tags column" not in headers and (
            column_names is None or header_row
        ):
            tags_index = detect_tags_column(rows)

        width = max((len(r) for r in rows), default=2)
        if column_names is not None:
            width = max(width, len(column_names))
        if tags_index is not None and tags_index >= width:
            self._warn("Tags column %d is beyond the last column; ignoring it", tags_index + 1)
            tags_index = None

        field_count = width - 1 if tags_index is not None else width
        field_count = max(field_count, 1)
        if column_names is not None:
            defaults = default_field_names(field_count)
            names = [c for i, c in enumerate(column_names) if i != tags_index][:field_count]
            names += defaults[len(names):]
            field_names = [name or defaults[i] for i, name in enumerate(names)]
        else:
            field_names = default_field_names(field_count)

        note_type = _synthetic_note_type(
            headers.get("notetype") or SYNTHETIC_NOTE_TYPE_NAME, field_names
        )
        deck = DeckInfo(id=1, name=headers.get("deck") or self.deck_name)

        notes: List[Note] = []
        cards: List[Card] = []
        for number, row in enumerate(rows, start=1):
            padded = row + [""] * (width - len(row))
            tags: Tuple[str, ...] = ()
            if tags_index is not None:
                tags = split_tags(padded[tags_index])
                padded = padded[:tags_index] + padded[tags_index + 1:]
            notes.append(Note(
                id=number,
                guid="tsv-{}".format(number),
                note_type_id=note_type.id,
                fields=tuple(padded[:field_count]),
                tags=tags,
            ))
            cards.append(Card(id=number, note_id=number, deck_id=deck.id))

        logger.info("Parsed %d rows into %d-field notes (tags column: %s)",
                    len(notes), field_count,
                    tags_index + 1 if tags_index is not None else "none")
        return NormalizedRecordSet(
            notes=tuple(notes),
            cards=tuple(cards),
            decks=(deck,),
            note_types=(note_type,),
            meta=CollectionMeta(format_version="text"),
            warnings=tuple(self.warnings),
        )


def decode(data: bytes) -> str:
    """Decode file bytes as UTF-8, dropping a leading BOM."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise errors.parse_error(
            "The text file is not valid UTF-8 (byte offset {}).".format(exc.start),
            details={"offset": exc.start},
        ) from exc


def parse(text: str, deck_name: Optional[str] = None) -> NormalizedRecordSet:
    """Parse tab-separated text into a NormalizedRecordSet."""
    return DelimitedTextParser(deck_name=deck_name).parse(text)
