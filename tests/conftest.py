"""Shared fixtures: real Anki collections built on the fly.

WHY: Parsers and the pipeline must be tested against genuine SQLite
files and zip packages, not mocks: the interesting failures (missing
columns, protobuf blobs, WAL headers, zip ratios) live in the bytes.
Building collections in tmp_path keeps the suite hermetic and lets each
test shape exactly the data it needs.

HOW: make_legacy_collection() writes a schema-11 database (decks and
note types as JSON in ``col``), make_split_collection() a schema-18
database (dedicated tables with protobuf configs, encoded by the tiny
proto_* helpers below). make_package() zips a database the way Anki
exports do. Fixtures wrap these with one realistic sample collection.

RULES:
- Packages use ZIP_STORED so mostly-empty SQLite pages never trip the
  compression ratio check by accident
- Note and card ids are small integers for readable assertions
- Sample collection: Default (empty), Japanese, Japanese::Kanji,
  Geography; basic, reversed, cloze, custom and suspended cards
"""

from __future__ import annotations

import io
import json
import sqlite3
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

# ---------------------------------------------------------------------------
# Protobuf encoding (split layout config blobs)
# ---------------------------------------------------------------------------


def proto_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def proto_field(number: int, value: Any) -> bytes:
    """Encode one field: ints as varints, str/bytes as length-delimited."""
    if isinstance(value, int):
        return proto_varint(number << 3) + proto_varint(value)
    data = value.encode("utf-8") if isinstance(value, str) else bytes(value)
    return proto_varint((number << 3) | 2) + proto_varint(len(data)) + data


# ---------------------------------------------------------------------------
# Note types (legacy JSON shape)
# ---------------------------------------------------------------------------

BASIC_MODEL: Dict[str, Any] = {
    "id": 1001,
    "name": "Basic",
    "type": 0,
    "flds": [{"name": "Front", "ord": 0}, {"name": "Back", "ord": 1}],
    "tmpls": [{
        "name": "Card 1", "ord": 0,
        "qfmt": "{{Front}}", "afmt": "{{FrontSide}}<hr id=answer>{{Back}}",
    }],
}

REVERSED_MODEL: Dict[str, Any] = {
    "id": 1002,
    "name": "Basic (and reversed card)",
    "type": 0,
    "flds": [{"name": "Front", "ord": 0}, {"name": "Back", "ord": 1}],
    "tmpls": [
        {"name": "Card 1", "ord": 0,
         "qfmt": "{{Front}}", "afmt": "{{FrontSide}}<hr id=answer>{{Back}}"},
        {"name": "Card 2", "ord": 1,
         "qfmt": "{{Back}}", "afmt": "{{FrontSide}}<hr id=answer>{{Front}}"},
    ],
}

CLOZE_MODEL: Dict[str, Any] = {
    "id": 1003,
    "name": "Cloze",
    "type": 1,
    "flds": [{"name": "Text", "ord": 0}, {"name": "Back Extra", "ord": 1}],
    "tmpls": [{
        "name": "Cloze", "ord": 0,
        "qfmt": "{{cloze:Text}}", "afmt": "{{cloze:Text}}<br>{{Back Extra}}",
    }],
}

VOCAB_MODEL: Dict[str, Any] = {
    "id": 1004,
    "name": "Japanese Vocab",
    "type": 0,
    "flds": [
        {"name": "Word", "ord": 0},
        {"name": "Reading", "ord": 1},
        {"name": "Meaning", "ord": 2},
    ],
    "tmpls": [{
        "name": "Recognition", "ord": 0,
        "qfmt": "{{Word}}", "afmt": "{{FrontSide}}<hr id=answer>{{Reading}}<br>{{Meaning}}",
    }],
}

TERM_DEFINITION_MODEL: Dict[str, Any] = {
    "id": 1005,
    "name": "Term/Definition",
    "type": 0,
    "flds": [{"name": "Term", "ord": 0}, {"name": "Definition", "ord": 1}],
    "tmpls": [{
        "name": "Card 1", "ord": 0,
        "qfmt": "{{Term}}", "afmt": "{{FrontSide}}<hr id=answer>{{Definition}}",
    }],
}


def note(note_id: int, mid: int, fields: Sequence[str], tags: str = "") -> Dict[str, Any]:
    return {"id": note_id, "mid": mid, "fields": list(fields), "tags": tags}


def card(card_id: int, nid: int, did: int, ord: int = 0, queue: int = 0, **stats: int) -> Dict[str, Any]:
    row = {"id": card_id, "nid": nid, "did": did, "ord": ord, "queue": queue,
           "due": 0, "ivl": 0, "factor": 0, "reps": 0, "lapses": 0, "odid": 0}
    row.update(stats)
    return row


# ---------------------------------------------------------------------------
# Database writers
# ---------------------------------------------------------------------------

_NOTES_SQL = """
CREATE TABLE notes (
    id integer primary key, guid text not null, mid integer not null,
    mod integer not null, usn integer not null, tags text not null,
    flds text not null, sfld text not null, csum integer not null,
    flags integer not null, data text not null
)"""

_CARDS_SQL = """
CREATE TABLE cards (
    id integer primary key, nid integer not null, did integer not null,
    ord integer not null, mod integer not null, usn integer not null,
    type integer not null, queue integer not null, due integer not null,
    ivl integer not null, factor integer not null, reps integer not null,
    lapses integer not null, left integer not null, odue integer not null,
    odid integer not null, flags integer not null, data text not null
)"""

_LEGACY_COL_SQL = """
CREATE TABLE col (
    id integer primary key, crt integer not null, mod integer not null,
    scm integer not null, ver integer not null, dty integer not null,
    usn integer not null, ls integer not null, conf text not null,
    models text not null, decks text not null, dconf text not null,
    tags text not null
)"""

_SPLIT_SQL = (
    "CREATE TABLE decks (id integer primary key not null, name text not null, "
    "mtime_secs integer not null, usn integer not null, common blob not null, kind blob not null)",
    "CREATE TABLE notetypes (id integer primary key not null, name text not null, "
    "mtime_secs integer not null, usn integer not null, config blob not null)",
    "CREATE TABLE fields (ntid integer not null, ord integer not null, name text not null, "
    "config blob not null, primary key (ntid, ord))",
    "CREATE TABLE templates (ntid integer not null, ord integer not null, name text not null, "
    "mtime_secs integer not null, usn integer not null, config blob not null, "
    "primary key (ntid, ord))",
)


def _insert_notes_and_cards(conn: sqlite3.Connection, notes: Sequence[Dict[str, Any]],
                            cards: Sequence[Dict[str, Any]]) -> None:
    for n in notes:
        conn.execute(
            "INSERT INTO notes VALUES (?, ?, ?, 0, -1, ?, ?, ?, 0, 0, '')",
            (n["id"], "guid{}".format(n["id"]), n["mid"], " {} ".format(n["tags"]) if n["tags"] else "",
             "\x1f".join(n["fields"]), n["fields"][0] if n["fields"] else ""),
        )
    for c in cards:
        conn.execute(
            "INSERT INTO cards VALUES (?, ?, ?, ?, 0, -1, 0, ?, ?, ?, ?, ?, ?, 0, 0, ?, 0, '')",
            (c["id"], c["nid"], c["did"], c["ord"], c["queue"], c["due"], c["ivl"],
             c["factor"], c["reps"], c["lapses"], c["odid"]),
        )


def make_legacy_collection(
    path: Path,
    decks: Dict[int, str],
    models: Sequence[Dict[str, Any]],
    notes: Sequence[Dict[str, Any]],
    cards: Sequence[Dict[str, Any]],
    ver: int = 11,
    descriptions: Optional[Dict[int, str]] = None,
) -> bytes:
    """Write a schema-11 style collection and return its bytes."""
    descriptions = descriptions or {}
    deck_json = {
        str(did): {"id": did, "name": name, "desc": descriptions.get(did, ""), "conf": 1}
        for did, name in decks.items()
    }
    model_json = {str(m["id"]): m for m in models}
    conn = sqlite3.connect(str(path))
    try:
        conn.execute(_LEGACY_COL_SQL)
        conn.execute(_NOTES_SQL)
        conn.execute(_CARDS_SQL)
        conn.execute(
            "INSERT INTO col VALUES (1, 1600000000, 1600000001000, 0, ?, 0, 0, 0, '{}', ?, ?, '{}', '{}')",
            (ver, json.dumps(model_json), json.dumps(deck_json)),
        )
        _insert_notes_and_cards(conn, notes, cards)
        conn.commit()
    finally:
        conn.close()
    return path.read_bytes()


def make_split_collection(
    path: Path,
    decks: Dict[int, str],
    models: Sequence[Dict[str, Any]],
    notes: Sequence[Dict[str, Any]],
    cards: Sequence[Dict[str, Any]],
    ver: int = 18,
    descriptions: Optional[Dict[int, str]] = None,
) -> bytes:
    """Write a schema-18 style collection (split tables) and return its bytes.

    Deck names may use "::"; they are stored with the \\x1f separator.
    Models use the same dict shape as the legacy JSON.
    """
    descriptions = descriptions or {}
    conn = sqlite3.connect(str(path))
    try:
        conn.execute(_LEGACY_COL_SQL)
        for statement in _SPLIT_SQL:
            conn.execute(statement)
        conn.execute(_NOTES_SQL)
        conn.execute(_CARDS_SQL)
        conn.execute(
            "INSERT INTO col VALUES (1, 1600000000, 1600000001000, 0, ?, 0, 0, 0, '', '', '', '', '')",
            (ver,),
        )
        for did, name in decks.items():
            normal = proto_field(1, 1)
            if descriptions.get(did):
                normal += proto_field(4, descriptions[did])
            conn.execute(
                "INSERT INTO decks VALUES (?, ?, 0, 0, ?, ?)",
                (did, name.replace("::", "\x1f"), b"", proto_field(1, normal)),
            )
        for m in models:
            config = proto_field(1, 1) if m.get("type") == 1 else b""
            conn.execute("INSERT INTO notetypes VALUES (?, ?, 0, 0, ?)", (m["id"], m["name"], config))
            for f in m["flds"]:
                conn.execute("INSERT INTO fields VALUES (?, ?, ?, ?)",
                             (m["id"], f["ord"], f["name"], b""))
            for t in m["tmpls"]:
                tconfig = proto_field(1, t["qfmt"]) + proto_field(2, t["afmt"])
                conn.execute("INSERT INTO templates VALUES (?, ?, ?, 0, 0, ?)",
                             (m["id"], t["ord"], t["name"], tconfig))
        _insert_notes_and_cards(conn, notes, cards)
        conn.commit()
    finally:
        conn.close()
    return path.read_bytes()


def make_package(
    database: Optional[bytes],
    db_name: str = "collection.anki2",
    media: Optional[Dict[str, str]] = None,
    extra: Optional[Dict[str, bytes]] = None,
) -> bytes:
    """Zip a collection the way Anki exports do (plus optional extra entries)."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
        if database is not None:
            zf.writestr(db_name, database)
        zf.writestr("media", json.dumps(media or {}))
        for name, data in (extra or {}).items():
            zf.writestr(name, data)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Sample collection
# ---------------------------------------------------------------------------

SAMPLE_DECKS: Dict[int, str] = {
    1: "Default",
    10: "Japanese",
    11: "Japanese::Kanji",
    20: "Geography",
}

SAMPLE_MODELS: List[Dict[str, Any]] = [BASIC_MODEL, REVERSED_MODEL, CLOZE_MODEL, VOCAB_MODEL]

SAMPLE_NOTES: List[Dict[str, Any]] = [
    note(100, 1001, ["<b>水</b>", "water"], "kanji n5"),
    note(101, 1002, ["犬", "dog"], "animals"),
    note(102, 1003, ["{{c1::Tokyo}} is the capital of {{c2::Japan}}", ""], "geo"),
    note(103, 1004, ["食べる", "たべる", "to eat"]),
    note(104, 1001, ["suspended front", "suspended back"]),
]

SAMPLE_CARDS: List[Dict[str, Any]] = [
    card(200, 100, 11, queue=2, due=45, ivl=12, factor=2500, reps=5, lapses=1),
    card(201, 101, 10, ord=0),
    card(202, 101, 10, ord=1, queue=1),
    card(203, 102, 20),
    card(204, 103, 10, queue=-2),
    card(205, 104, 10, queue=-1),
]


@pytest.fixture
def legacy_collection_bytes(tmp_path) -> bytes:
    """Schema-11 collection with the sample decks, notes and cards."""
    return make_legacy_collection(
        tmp_path / "legacy.anki2", SAMPLE_DECKS, SAMPLE_MODELS, SAMPLE_NOTES, SAMPLE_CARDS,
        descriptions={10: "Words and kanji"},
    )


@pytest.fixture
def split_collection_bytes(tmp_path) -> bytes:
    """Schema-18 collection holding the same sample data."""
    return make_split_collection(
        tmp_path / "split.anki21", SAMPLE_DECKS, SAMPLE_MODELS, SAMPLE_NOTES, SAMPLE_CARDS,
        descriptions={10: "Words and kanji"},
    )


@pytest.fixture
def sample_apkg(tmp_path, legacy_collection_bytes) -> Path:
    """The legacy sample collection packaged as an .apkg on disk."""
    path = tmp_path / "japanese.apkg"
    path.write_bytes(make_package(legacy_collection_bytes))
    return path


@pytest.fixture
def sample_tsv(tmp_path) -> Path:
    path = tmp_path / "capitals.tsv"
    path.write_text("Tokyo\tJapan\nParis\tFrance\n", encoding="utf-8")
    return path
