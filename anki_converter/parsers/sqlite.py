"""Anki collection database reader (legacy and split schema layouts).

WHY: The Anki collection is a SQLite file whose layout changed over the
years. Older collections (schema 11) keep decks and note types as JSON
blobs in the single ``col`` row; newer ones (schema 15+) split them into
``decks``, ``notetypes``, ``fields`` and ``templates`` tables with
protobuf config blobs and a "\\x1f" deck-name separator. Notes and cards
look the same in both, give or take a few optional columns.

HOW: The bytes are written to a private temp file and opened through a
``mode=ro`` URI. A small strategy table maps each known table shape to
a pair of deck/note-type readers; the first layout whose required tables
and columns are present wins. Notes and cards are read with per-column
defaults from PRAGMA table_info, then joined so every card has a note
and a deck and every note has a note type.

RULES:
- Never writes: read-only URI on a private copy (WAL header reset to
  rollback mode in the copy so no -wal/-shm files are needed)
- Missing col/notes/cards tables or required columns → CORRUPTED_FILE
- No layout matches → UNSUPPORTED_VERSION; an unfamiliar ``ver`` alone
  only logs a warning
- Orphan cards (note missing) are dropped with a warning
- Unknown deck ids get a placeholder deck, unknown note type ids a
  placeholder note type; cards are never dropped for either
- A malformed deck or note-type entry is skipped with a warning
- Deck names are normalized to "::" separators
"""

from __future__ import annotations

import json
import logging
import sqlite3
import tempfile
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from anki_converter import errors
from anki_converter.core.detection import SQLITE_SIGNATURE
from anki_converter.core.records import (
    HIERARCHY_SEPARATOR,
    Card,
    CollectionMeta,
    DeckInfo,
    FieldDef,
    Note,
    NoteKind,
    NoteType,
    NormalizedRecordSet,
    TemplateDef,
    queue_state_from_code,
    split_tags,
)

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "\x1f"
"""Separator between field values in ``notes.flds``."""

SPLIT_DECK_SEPARATOR = "\x1f"
"""Hierarchy separator in ``decks.name`` of the split layout."""

KNOWN_SCHEMA_VERSIONS = frozenset({11, 15, 16, 17, 18})

PLACEHOLDER_NOTE_TYPE_NAME = "Unknown Note Type"

REQUIRED_TABLES = ("col", "notes", "cards")

REQUIRED = object()
"""Marks a column that must exist in the table."""

# Column → default for rows read from each table
NOTE_COLUMNS: Dict[str, Any] = {
    "id": REQUIRED,
    "mid": REQUIRED,
    "flds": REQUIRED,
    "guid": "",
    "tags": "",
    "mod": 0,
}

CARD_COLUMNS: Dict[str, Any] = {
    "id": REQUIRED,
    "nid": REQUIRED,
    "did": REQUIRED,
    "ord": 0,
    "queue": 0,
    "due": 0,
    "ivl": 0,
    "factor": 0,
    "reps": 0,
    "lapses": 0,
    "odid": 0,
}

COL_COLUMNS: Dict[str, Any] = {
    "crt": 0,
    "mod": 0,
    "ver": None,
}


# ---------------------------------------------------------------------------
# Opening the database
# ---------------------------------------------------------------------------


def _rollback_mode_copy(database_bytes: bytes) -> bytes:
    """Return the bytes with a WAL header switched to rollback-journal mode.

    Header offsets 18/19 hold the file format write/read versions;
    2 means WAL, which would need companion files to open read-only.
    """
    if len(database_bytes) >= 100 and database_bytes[18:20] == b"\x02\x02":
        patched = bytearray(database_bytes)
        patched[18] = 1
        patched[19] = 1
        return bytes(patched)
    return database_bytes


def _decode_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


@contextmanager
def open_readonly(database_bytes: bytes) -> Iterator[sqlite3.Connection]:
    """Open database bytes as a read-only SQLite connection.

    The bytes are copied into a private temporary directory that is
    removed when the context exits.
    """
    if not database_bytes.startswith(SQLITE_SIGNATURE):
        raise errors.corrupted_file("The data is not a SQLite database (bad header).")

    with tempfile.TemporaryDirectory(prefix="anki_db_") as tmp:
        path = Path(tmp) / "collection.db"
        path.write_bytes(_rollback_mode_copy(database_bytes))
        try:
            conn = sqlite3.connect("{}?mode=ro".format(path.as_uri()), uri=True)
        except sqlite3.Error as exc:
            raise errors.corrupted_file(
                "Failed to open SQLite database: {}".format(exc)
            ) from exc
        with closing(conn):
            conn.text_factory = _decode_text
            yield conn


def _table_names(conn: sqlite3.Connection) -> set:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {row[0] for row in rows}


def _column_names(conn: sqlite3.Connection, table: str) -> set:
    return {row[1] for row in conn.execute("PRAGMA table_info({})".format(table)).fetchall()}


def _read_rows(
    conn: sqlite3.Connection,
    table: str,
    columns: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """SELECT the wanted columns, substituting defaults for absent optional ones."""
    present = _column_names(conn, table)
    missing_required = [c for c, d in columns.items() if d is REQUIRED and c not in present]
    if missing_required:
        raise errors.corrupted_file(
            "Table '{}' is missing required column(s): {}".format(
                table, ", ".join(missing_required)
            ),
            source=table,
        )
    selected = [c for c in columns if c in present]
    if not selected:
        return []
    query = "SELECT {} FROM {}".format(", ".join(selected), table)
    rows = []
    skipped = 0
    for values in conn.execute(query):
        row = dict(zip(selected, values))
        if any(row[c] is None for c, d in columns.items() if d is REQUIRED):
            skipped += 1
            continue
        for key, default in columns.items():
            if row.get(key) is None and default is not REQUIRED:
                row[key] = default
        rows.append(row)
    if skipped:
        logger.warning("Skipped %d row(s) of %s with NULL in a required column", skipped, table)
    return rows


# ---------------------------------------------------------------------------
# Protobuf config blobs (split layout)
# ---------------------------------------------------------------------------


def _read_varint(buf: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def parse_proto(blob: Optional[bytes]) -> Dict[int, List[Any]]:
    """Decode one protobuf message level into {field number: [values]}.

    Varints come back as ints, length-delimited fields as bytes, fixed
    32/64-bit fields as raw bytes. Nested messages are decoded by
    calling this again on the bytes value. Raises ValueError on
    malformed input.
    """
    fields: Dict[int, List[Any]] = {}
    if not blob:
        return fields
    buf = blob.encode("utf-8") if isinstance(blob, str) else bytes(blob)
    pos = 0
    while pos < len(buf):
        key, pos = _read_varint(buf, pos)
        number, wire_type = key >> 3, key & 0x7
        if number == 0:
            raise ValueError("field number 0")
        if wire_type == 0:
            value, pos = _read_varint(buf, pos)
        elif wire_type == 1:
            value, pos = buf[pos:pos + 8], pos + 8
        elif wire_type == 2:
            length, pos = _read_varint(buf, pos)
            if pos + length > len(buf):
                raise ValueError("length-delimited field overruns buffer")
            value, pos = buf[pos:pos + length], pos + length
        elif wire_type == 5:
            value, pos = buf[pos:pos + 4], pos + 4
        else:
            raise ValueError("unsupported wire type {}".format(wire_type))
        if pos > len(buf):
            raise ValueError("fixed-width field overruns buffer")
        fields.setdefault(number, []).append(value)
    return fields


def _proto_str(fields: Dict[int, List[Any]], number: int, default: str = "") -> str:
    values = fields.get(number)
    if not values or not isinstance(values[-1], bytes):
        return default
    return values[-1].decode("utf-8", errors="replace")


def _proto_int(fields: Dict[int, List[Any]], number: int, default: int = 0) -> int:
    values = fields.get(number)
    if not values or not isinstance(values[-1], int):
        return default
    return values[-1]


# ---------------------------------------------------------------------------
# Layout strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Layout:
    """How one collection schema generation stores decks and note types."""

    name: str
    tables: Tuple[str, ...]
    col_columns: Tuple[str, ...]
    read_decks: Callable[["SchemaReader", sqlite3.Connection], List[DeckInfo]]
    read_note_types: Callable[["SchemaReader", sqlite3.Connection], List[NoteType]]

    def matches(self, tables: set, col_columns: set) -> bool:
        return all(t in tables for t in self.tables) and all(
            c in col_columns for c in self.col_columns
        )


class SchemaReader:
    """Reads one collection database into a NormalizedRecordSet.

    WHY: A reader instance owns the per-read warning list; nothing is
    shared between reads, so two conversions never interfere.

    HOW: read() opens the database, picks a layout from LAYOUTS, reads
    notes/cards/decks/note types, then joins them.
    """

    def __init__(self) -> None:
        self.warnings: List[str] = []

    def _warn(self, message: str, *args: Any) -> None:
        text = message % args if args else message
        logger.warning(text)
        self.warnings.append(text)

    # -- legacy layout (JSON blobs in col) ----------------------------------

    def _col_json(self, conn: sqlite3.Connection, column: str) -> Dict[str, Any]:
        row = conn.execute("SELECT {} FROM col LIMIT 1".format(column)).fetchone()
        if row is None or not row[0]:
            return {}
        try:
            data = json.loads(row[0])
        except ValueError as exc:
            self._warn("col.%s is not valid JSON (%s); ignoring it", column, exc)
            return {}
        if not isinstance(data, dict):
            self._warn("col.%s is not a JSON object; ignoring it", column)
            return {}
        return data

    def _legacy_decks(self, conn: sqlite3.Connection) -> List[DeckInfo]:
        decks = []
        for key, entry in self._col_json(conn, "decks").items():
            try:
                decks.append(DeckInfo(
                    id=int(entry.get("id", key)),
                    name=str(entry["name"]),
                    description=str(entry.get("desc") or ""),
                    config_id=int(entry.get("conf") or 0),
                ))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                self._warn("Skipping malformed deck entry %s (%s)", key, exc)
        return decks

    def _legacy_note_type(self, key: str, entry: Dict[str, Any]) -> NoteType:
        fields = tuple(sorted(
            (
                FieldDef(
                    name=str(f.get("name") or "Field {}".format(i + 1)),
                    ordinal=int(f.get("ord", i) or 0),
                    sticky=bool(f.get("sticky", False)),
                    rtl=bool(f.get("rtl", False)),
                    font=str(f.get("font") or "Arial"),
                    size=int(f.get("size") or 20),
                )
                for i, f in enumerate(entry.get("flds") or [])
            ),
            key=lambda f: f.ordinal,
        ))
        templates = tuple(sorted(
            (
                TemplateDef(
                    name=str(t.get("name") or "Card {}".format(i + 1)),
                    ordinal=int(t.get("ord", i) or 0),
                    question_format=str(t.get("qfmt") or ""),
                    answer_format=str(t.get("afmt") or ""),
                )
                for i, t in enumerate(entry.get("tmpls") or [])
            ),
            key=lambda t: t.ordinal,
        ))
        return NoteType(
            id=int(entry.get("id", key)),
            name=str(entry.get("name") or "Note Type {}".format(key)),
            kind=NoteKind.CLOZE if entry.get("type") == 1 else NoteKind.STANDARD,
            fields=fields,
            templates=templates,
        )

    def _legacy_note_types(self, conn: sqlite3.Connection) -> List[NoteType]:
        note_types = []
        for key, entry in self._col_json(conn, "models").items():
            try:
                note_types.append(self._legacy_note_type(key, entry))
            except (TypeError, ValueError, AttributeError) as exc:
                self._warn("Skipping malformed note type entry %s (%s)", key, exc)
        return note_types

    # -- split layout (dedicated tables) ------------------------------------

    def _split_decks(self, conn: sqlite3.Connection) -> List[DeckInfo]:
        has_kind = "kind" in _column_names(conn, "decks")
        query = "SELECT id, name, kind FROM decks" if has_kind else "SELECT id, name FROM decks"
        decks = []
        for row in conn.execute(query):
            deck_id, raw_name = row[0], row[1] or ""
            description, config_id = "", 0
            if has_kind and row[2]:
                try:
                    normal = parse_proto(row[2]).get(1)
                    if normal:
                        inner = parse_proto(normal[-1])
                        config_id = _proto_int(inner, 1)
                        description = _proto_str(inner, 4)
                except ValueError as exc:
                    self._warn("Deck %s has an unreadable config blob (%s)", deck_id, exc)
            decks.append(DeckInfo(
                id=int(deck_id),
                name=str(raw_name).replace(SPLIT_DECK_SEPARATOR, HIERARCHY_SEPARATOR),
                description=description,
                config_id=config_id,
            ))
        return decks

    def _split_fields(self, conn: sqlite3.Connection) -> Dict[int, List[FieldDef]]:
        by_type: Dict[int, List[FieldDef]] = {}
        has_config = "config" in _column_names(conn, "fields")
        query = "SELECT ntid, ord, name{} FROM fields".format(", config" if has_config else "")
        for row in conn.execute(query):
            config: Dict[int, List[Any]] = {}
            if has_config:
                try:
                    config = parse_proto(row[3])
                except ValueError as exc:
                    self._warn("Field %r of note type %s has an unreadable config (%s)",
                               row[2], row[0], exc)
            by_type.setdefault(int(row[0]), []).append(FieldDef(
                name=str(row[2]),
                ordinal=int(row[1]),
                sticky=bool(_proto_int(config, 1)),
                rtl=bool(_proto_int(config, 2)),
                font=_proto_str(config, 3, "Arial") or "Arial",
                size=_proto_int(config, 4, 20) or 20,
            ))
        return by_type

    def _split_templates(self, conn: sqlite3.Connection) -> Dict[int, List[TemplateDef]]:
        by_type: Dict[int, List[TemplateDef]] = {}
        has_config = "config" in _column_names(conn, "templates")
        query = "SELECT ntid, ord, name{} FROM templates".format(", config" if has_config else "")
        for row in conn.execute(query):
            config: Dict[int, List[Any]] = {}
            if has_config:
                try:
                    config = parse_proto(row[3])
                except ValueError as exc:
                    self._warn("Template %r of note type %s has an unreadable config (%s)",
                               row[2], row[0], exc)
            by_type.setdefault(int(row[0]), []).append(TemplateDef(
                name=str(row[2]),
                ordinal=int(row[1]),
                question_format=_proto_str(config, 1),
                answer_format=_proto_str(config, 2),
            ))
        return by_type

    def _split_note_types(self, conn: sqlite3.Connection) -> List[NoteType]:
        fields = self._split_fields(conn)
        templates = self._split_templates(conn)
        has_config = "config" in _column_names(conn, "notetypes")
        query = "SELECT id, name{} FROM notetypes".format(", config" if has_config else "")
        note_types = []
        for row in conn.execute(query):
            nt_id = int(row[0])
            kind = NoteKind.STANDARD
            if has_config:
                try:
                    if _proto_int(parse_proto(row[2]), 1) == 1:
                        kind = NoteKind.CLOZE
                except ValueError as exc:
                    self._warn("Note type %s has an unreadable config (%s); "
                               "treating it as standard", nt_id, exc)
            note_types.append(NoteType(
                id=nt_id,
                name=str(row[1]),
                kind=kind,
                fields=tuple(sorted(fields.get(nt_id, []), key=lambda f: f.ordinal)),
                templates=tuple(sorted(templates.get(nt_id, []), key=lambda t: t.ordinal)),
            ))

        # Half-migrated collections may still describe some types in col.models
        if "models" in _column_names(conn, "col"):
            known = {nt.id for nt in note_types}
            for legacy in self._legacy_note_types(conn):
                if legacy.id not in known:
                    note_types.append(legacy)
        return note_types

    # -- reading ---------------------------------------------------------

    def _pick_layout(self, conn: sqlite3.Connection, tables: set) -> _Layout:
        col_columns = _column_names(conn, "col")
        for layout in LAYOUTS:
            if layout.matches(tables, col_columns):
                return layout
        raise errors.unsupported_version(
            "Unrecognized collection layout: no deck/note type storage found.",
            details={"tables": sorted(tables)},
        )

    def _read_meta(self, conn: sqlite3.Connection, layout: _Layout) -> CollectionMeta:
        rows = _read_rows(conn, "col", COL_COLUMNS)
        if not rows:
            self._warn("Collection table is empty; using default metadata")
            return CollectionMeta(format_version=layout.name)
        row = rows[0]
        version = row["ver"]
        if version is not None and int(version) not in KNOWN_SCHEMA_VERSIONS:
            logger.warning("Unfamiliar collection schema version %s; reading as %s layout",
                           version, layout.name)
        return CollectionMeta(
            created_at=int(row["crt"] or 0),
            modified_at=int(row["mod"] or 0),
            schema_revision=int(version) if version is not None else None,
            format_version=layout.name,
        )

    def read(self, database_bytes: bytes) -> NormalizedRecordSet:
        """Read and join every record in a collection database.

        Raises:
            ConversionError: CORRUPTED_FILE or UNSUPPORTED_VERSION.
        """
        try:
            with open_readonly(database_bytes) as conn:
                tables = _table_names(conn)
                missing = [t for t in REQUIRED_TABLES if t not in tables]
                if missing:
                    raise errors.corrupted_file(
                        "Database is missing required table(s): {}. "
                        "This may not be an Anki collection.".format(", ".join(missing)),
                        details={"tables": sorted(tables)},
                    )
                layout = self._pick_layout(conn, tables)
                logger.info("Reading collection with %s layout", layout.name)
                meta = self._read_meta(conn, layout)
                note_rows = _read_rows(conn, "notes", NOTE_COLUMNS)
                card_rows = _read_rows(conn, "cards", CARD_COLUMNS)
                decks = layout.read_decks(self, conn)
                note_types = layout.read_note_types(self, conn)
        except sqlite3.DatabaseError as exc:
            raise errors.corrupted_file(
                "The Anki database could not be read: {}".format(exc)
            ) from exc

        return self._join(meta, note_rows, card_rows, decks, note_types)

    def _join(
        self,
        meta: CollectionMeta,
        note_rows: Sequence[Dict[str, Any]],
        card_rows: Sequence[Dict[str, Any]],
        decks: List[DeckInfo],
        note_types: List[NoteType],
    ) -> NormalizedRecordSet:
        note_types_by_id = {nt.id: nt for nt in note_types}
        decks_by_id = {d.id: d for d in decks}

        notes: List[Note] = []
        unknown_type_widths: Dict[int, int] = {}
        for row in note_rows:
            values = tuple(str(row["flds"]).split(FIELD_SEPARATOR))
            mid = int(row["mid"])
            if mid not in note_types_by_id:
                unknown_type_widths[mid] = max(unknown_type_widths.get(mid, 0), len(values))
            notes.append(Note(
                id=int(row["id"]),
                guid=str(row["guid"]),
                note_type_id=mid,
                fields=values,
                tags=split_tags(str(row["tags"])),
                modified_at=int(row["mod"]),
            ))

        for mid, width in sorted(unknown_type_widths.items()):
            self._warn("Note type %s is not defined; using placeholder '%s'",
                       mid, PLACEHOLDER_NOTE_TYPE_NAME)
            placeholder = NoteType(
                id=mid,
                name=PLACEHOLDER_NOTE_TYPE_NAME,
                fields=tuple(FieldDef(name="Field {}".format(i + 1), ordinal=i) for i in range(width)),
                placeholder=True,
            )
            note_types.append(placeholder)
            note_types_by_id[mid] = placeholder

        note_ids = {n.id for n in notes}
        cards: List[Card] = []
        orphans = 0
        for row in card_rows:
            note_id = int(row["nid"])
            if note_id not in note_ids:
                orphans += 1
                continue
            home_deck = int(row["odid"] or 0) or int(row["did"])
            if home_deck not in decks_by_id:
                self._warn("Deck %s is not defined; using a placeholder deck", home_deck)
                placeholder_deck = DeckInfo(id=home_deck, name="Unknown Deck {}".format(home_deck))
                decks.append(placeholder_deck)
                decks_by_id[home_deck] = placeholder_deck
            cards.append(Card(
                id=int(row["id"]),
                note_id=note_id,
                deck_id=home_deck,
                template_ordinal=int(row["ord"]),
                queue_state=queue_state_from_code(int(row["queue"])),
                due=int(row["due"]),
                interval=int(row["ivl"]),
                ease_factor=int(row["factor"]),
                repetitions=int(row["reps"]),
                lapses=int(row["lapses"]),
            ))
        if orphans:
            self._warn("Dropped %d card(s) whose note is missing", orphans)

        logger.info("Read %d notes, %d cards, %d decks, %d note types",
                    len(notes), len(cards), len(decks), len(note_types))
        return NormalizedRecordSet(
            notes=tuple(notes),
            cards=tuple(cards),
            decks=tuple(decks),
            note_types=tuple(note_types),
            meta=meta,
            warnings=tuple(self.warnings),
        )


LAYOUTS: Tuple[_Layout, ...] = (
    _Layout(
        name="split",
        tables=("decks", "notetypes", "fields", "templates"),
        col_columns=(),
        read_decks=SchemaReader._split_decks,
        read_note_types=SchemaReader._split_note_types,
    ),
    _Layout(
        name="legacy",
        tables=(),
        col_columns=("decks", "models"),
        read_decks=SchemaReader._legacy_decks,
        read_note_types=SchemaReader._legacy_note_types,
    ),
)
"""Known collection layouts, newest first. Adding a layout = one entry."""


def read(database_bytes: bytes) -> NormalizedRecordSet:
    """Read collection database bytes into a NormalizedRecordSet."""
    return SchemaReader().read(database_bytes)


def card_count(database_bytes: bytes) -> int:
    """Count rows in the cards table without reading anything else."""
    try:
        with open_readonly(database_bytes) as conn:
            if "cards" not in _table_names(conn):
                raise errors.corrupted_file("Database has no cards table.")
            return int(conn.execute("SELECT COUNT(*) FROM cards").fetchone()[0])
    except sqlite3.DatabaseError as exc:
        raise errors.corrupted_file(
            "The Anki database could not be read: {}".format(exc)
        ) from exc
