"""Output document model and schema-validated JSON serialization.

WHY: The JSON document is the product's public contract. Consumers rely
on fixed keys (snake_case), a ``type`` discriminator on every card, and
``tags`` that is always a list. Modelling it as dataclasses keeps the
builder honest; validating against output_schema.json before returning
text catches any drift between the two.

HOW: Dataclasses for decks, the three card shapes, cloze variations,
metadata, and the top-level result. Each has a to_dict(); dumps()
serializes with ensure_ascii=False and validates the dict with
jsonschema before encoding.

RULES:
- Every card dict carries id, type, tags (list, possibly empty), fields
- stats is emitted only when present; suspended only when True
- Deck dicts omit "subdecks" when a deck has no children
- Deck "name" is the last path segment; nesting is expressed by subdecks
- Validate output against the schema before returning; raise on failure
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import jsonschema

_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "output_schema.json"


def _load_schema() -> Dict[str, Any]:
    """Load the output JSON schema from disk.

    Cached at module level after first call to avoid repeated I/O.
    """
    with open(_SCHEMA_PATH, encoding="utf-8") as f:
        return json.load(f)


_CACHED_SCHEMA: Optional[Dict[str, Any]] = None


def get_schema() -> Dict[str, Any]:
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        _CACHED_SCHEMA = _load_schema()
    return _CACHED_SCHEMA


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


@dataclass
class ClozeVariation:
    """One hidden-text variation of a cloze note.

    RULES:
    - index: the N of {{cN::...}}
    - masked_text: cleaned text with this index replaced by "[...]" or "[hint]"
    - answer: cleaned hidden text for this index
    """

    index: int
    masked_text: str
    answer: str

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "masked_text": self.masked_text, "answer": self.answer}


@dataclass
class _CardBase:
    id: str
    tags: List[str] = field(default_factory=list)
    fields: Dict[str, str] = field(default_factory=dict)
    stats: Optional[Dict[str, Any]] = None
    suspended: bool = False

    card_type = ""

    def _common(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.card_type,
            "tags": list(self.tags),
            "fields": dict(self.fields),
        }
        if self.stats is not None:
            data["stats"] = dict(self.stats)
        if self.suspended:
            data["suspended"] = True
        return data


@dataclass
class BasicCard(_CardBase):
    """Two-sided card with a front/back mapping."""

    front: str = ""
    back: str = ""

    card_type = "basic"

    def to_dict(self) -> Dict[str, Any]:
        data = self._common()
        data["front"] = self.front
        data["back"] = self.back
        return data


@dataclass
class ClozeCard(_CardBase):
    """Cloze note with one variation per distinct cloze index."""

    text: str = ""
    clozes: List[ClozeVariation] = field(default_factory=list)

    card_type = "cloze"

    def to_dict(self) -> Dict[str, Any]:
        data = self._common()
        data["text"] = self.text
        data["clozes"] = [c.to_dict() for c in self.clozes]
        return data


@dataclass
class CustomCard(_CardBase):
    """Any other note type: field names and values kept verbatim."""

    note_type_name: str = ""

    card_type = "custom"

    def to_dict(self) -> Dict[str, Any]:
        data = self._common()
        data["note_type_name"] = self.note_type_name
        return data


OutputCard = Union[BasicCard, ClozeCard, CustomCard]


# ---------------------------------------------------------------------------
# Decks, metadata, result
# ---------------------------------------------------------------------------


@dataclass
class Deck:
    """One node of the deck forest."""

    name: str
    description: str = ""
    cards: List[OutputCard] = field(default_factory=list)
    subdecks: List["Deck"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "cards": [c.to_dict() for c in self.cards],
        }
        if self.subdecks:
            data["subdecks"] = [d.to_dict() for d in self.subdecks]
        return data


@dataclass
class ConversionMetadata:
    """Summary written next to the decks.

    RULES:
    - converted_at: ISO-8601 UTC timestamp
    - total_decks counts every node including cardless intermediates
    - total_cards counts only emitted cards
    - note_type_names: sorted, unique
    - schema_version: collection ``ver`` or None for text input
    - warnings: anomalies that were defaulted rather than failed
    """

    converted_at: str
    source_format: str
    total_decks: int
    total_cards: int
    note_type_names: List[str]
    processing_time_ms: int
    schema_version: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "converted_at": self.converted_at,
            "source_format": self.source_format,
            "total_decks": self.total_decks,
            "total_cards": self.total_cards,
            "note_type_names": list(self.note_type_names),
            "processing_time_ms": self.processing_time_ms,
            "schema_version": self.schema_version,
            "warnings": list(self.warnings),
        }


@dataclass
class ConversionResult:
    """Successful conversion: the deck forest plus metadata."""

    decks: List[Deck]
    metadata: ConversionMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decks": [d.to_dict() for d in self.decks],
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return dumps(self.to_dict(), indent=indent)


def validate(document: Dict[str, Any]) -> None:
    """Validate a document dict against output_schema.json.

    Raises jsonschema.ValidationError when the document does not conform.
    """
    jsonschema.validate(instance=document, schema=get_schema())


def dumps(document: Dict[str, Any], indent: Optional[int] = 2) -> str:
    """Validate and serialize a document dict; non-ASCII text is kept as-is."""
    validate(document)
    return json.dumps(document, indent=indent, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def count_decks(decks: List[Deck]) -> int:
    """Count every node in a deck forest."""
    return sum(1 + count_decks(d.subdecks) for d in decks)


def count_cards(decks: List[Deck]) -> int:
    """Count every card in a deck forest."""
    return sum(len(d.cards) + count_cards(d.subdecks) for d in decks)


def iter_cards(decks: List[Deck]) -> Iterator[OutputCard]:
    """Yield every card in a deck forest, depth first."""
    for deck in decks:
        yield from deck.cards
        yield from iter_cards(deck.subdecks)


def flatten_deck_names(decks: List[Deck], prefix: str = "") -> List[str]:
    """Full "::"-joined names of every node, depth first."""
    names: List[str] = []
    for deck in decks:
        full_name = "{}::{}".format(prefix, deck.name) if prefix else deck.name
        names.append(full_name)
        names.extend(flatten_deck_names(deck.subdecks, full_name))
    return names
