"""Intermediate record dataclasses shared by every parser.

WHY: Anki packages, bare SQLite collections of different schema
revisions, and tab-separated exports all describe the same things —
notes, cards, decks, note types. Downstream stages (text extraction,
card shaping, deck assembly) should not care where a record came from.
The NormalizedRecordSet is that single, well-typed intermediate form.

HOW: Frozen dataclasses mirror Anki's own entities:
  Note           — one piece of content with ordered raw (HTML) fields
  Card           — one reviewable instance of a note in a deck
  DeckInfo       — deck id, full "::"-separated name, description
  FieldDef       — one field definition of a note type
  TemplateDef    — one card template of a note type
  NoteType       — field/template schema, standard or cloze
  CollectionMeta — collection-level timestamps and schema revision
  NormalizedRecordSet — everything above plus recorded warnings

RULES:
- Records are immutable once the parse stage completes
- Sequences are tuples so nothing downstream can mutate a record set
- Every Card.note_id resolves to a Note, every Card.deck_id to a DeckInfo,
  every Note.note_type_id to a NoteType (parsers guarantee this)
- Deck names use "::" as the hierarchy separator regardless of source
- Anomalies that were defaulted instead of failing are listed in warnings
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

HIERARCHY_SEPARATOR = "::"


class QueueState(str, enum.Enum):
    """Scheduling state of a card, collapsed from Anki's queue codes.

    RULES:
    - Anki queue -1 → suspended; -2 and -3 (sibling/manual bury) → buried
    - 0 → new; 1, 3 (day learn), 4 (preview) → learning; 2 → review
    - Unknown codes fall back to new
    """

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    SUSPENDED = "suspended"
    BURIED = "buried"


_QUEUE_CODES: Dict[int, QueueState] = {
    -3: QueueState.BURIED,
    -2: QueueState.BURIED,
    -1: QueueState.SUSPENDED,
    0: QueueState.NEW,
    1: QueueState.LEARNING,
    2: QueueState.REVIEW,
    3: QueueState.LEARNING,
    4: QueueState.LEARNING,
}


def queue_state_from_code(code: int) -> QueueState:
    """Map an Anki ``cards.queue`` integer to a QueueState."""
    return _QUEUE_CODES.get(code, QueueState.NEW)


class NoteKind(str, enum.Enum):
    """Whether a note type generates cloze cards (Anki ``type`` 1)."""

    STANDARD = "standard"
    CLOZE = "cloze"


@dataclass(frozen=True)
class Note:
    """A single note with its raw field HTML.

    RULES:
    - fields: raw HTML per field, in note-type field order
    - tags: ordered, de-duplicated, never None
    - modified_at: epoch seconds (Anki ``notes.mod``)
    """

    id: int
    guid: str
    note_type_id: int
    fields: Tuple[str, ...]
    tags: Tuple[str, ...] = ()
    modified_at: int = 0


@dataclass(frozen=True)
class Card:
    """A card generated from a note via one template.

    RULES:
    - deck_id is the card's home deck (original deck for filtered decks)
    - ease_factor is Anki's permille factor (2500 = 250%), passed through
    - interval is days when positive, seconds when negative (Anki convention)
    """

    id: int
    note_id: int
    deck_id: int
    template_ordinal: int = 0
    queue_state: QueueState = QueueState.NEW
    due: int = 0
    interval: int = 0
    ease_factor: int = 0
    repetitions: int = 0
    lapses: int = 0


@dataclass(frozen=True)
class DeckInfo:
    """A deck definition; name may contain "::" for nesting."""

    id: int
    name: str
    description: str = ""
    config_id: int = 0


@dataclass(frozen=True)
class FieldDef:
    """One field of a note type."""

    name: str
    ordinal: int
    sticky: bool = False
    rtl: bool = False
    font: str = "Arial"
    size: int = 20


@dataclass(frozen=True)
class TemplateDef:
    """One card template: question and answer formats reference fields as {{Name}}."""

    name: str
    ordinal: int
    question_format: str = ""
    answer_format: str = ""


@dataclass(frozen=True)
class NoteType:
    """Schema governing a group of notes.

    RULES:
    - fields and templates are sorted by ordinal
    - placeholder is True for note types synthesized for unknown ids
    """

    id: int
    name: str
    kind: NoteKind = NoteKind.STANDARD
    fields: Tuple[FieldDef, ...] = ()
    templates: Tuple[TemplateDef, ...] = ()
    placeholder: bool = False

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)


@dataclass(frozen=True)
class CollectionMeta:
    """Collection-level metadata (Anki ``col`` row).

    RULES:
    - schema_revision: the ``col.ver`` integer, None for synthesized sets
    - format_version: which table layout was read ("legacy", "split", "text")
    """

    created_at: int = 0
    modified_at: int = 0
    schema_revision: Optional[int] = None
    format_version: str = ""


@dataclass(frozen=True)
class NormalizedRecordSet:
    """Everything a parser extracted from one input.

    WHY: The builder needs random access by id for joins, so lookup
    dicts are derived once here rather than rebuilt by every stage.
    """

    notes: Tuple[Note, ...]
    cards: Tuple[Card, ...]
    decks: Tuple[DeckInfo, ...]
    note_types: Tuple[NoteType, ...]
    meta: CollectionMeta = field(default_factory=CollectionMeta)
    warnings: Tuple[str, ...] = ()

    def notes_by_id(self) -> Dict[int, Note]:
        return {n.id: n for n in self.notes}

    def decks_by_id(self) -> Dict[int, DeckInfo]:
        return {d.id: d for d in self.decks}

    def note_types_by_id(self) -> Dict[int, NoteType]:
        return {nt.id: nt for nt in self.note_types}


def split_tags(raw: str) -> Tuple[str, ...]:
    """Split Anki's space-separated tag string into an ordered, unique tuple."""
    seen = set()
    tags = []
    for tag in raw.split():
        if tag not in seen:
            seen.add(tag)
            tags.append(tag)
    return tuple(tags)
