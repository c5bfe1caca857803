"""Card shaping, deck tree assembly, and metadata for the JSON document.

WHY: A NormalizedRecordSet is relational: cards point at notes, notes
at note types, cards at decks whose names encode a hierarchy. The JSON
document is a tree of decks holding self-contained cards. This module
does that reshaping, and decides what kind of card each note becomes.

HOW: Four functions, one per pipeline stage plus metadata:
  extract_note_text — clean every note's fields with the TextExtractor
  shape_cards       — classify each card (basic / cloze / custom) and
                      build its output object, grouped by home deck
  assemble_decks    — split deck names on "::" and build the forest
  build_metadata    — counts, note type names, timing, warnings
build() chains them for callers that do not need stage progress.

RULES:
- Cloze: note type kind is cloze. One variation per distinct index,
  sorted by index; masked_text replaces every marker of that index with
  "[...]" (or "[hint]") and leaves markers of other indices untouched
- Basic: exactly two fields mapped to front/back, by field name or by
  which field the first template's question/answer shows; the card's own
  template decides orientation (reversed cards swap front and back)
- Custom: everything else, field names kept verbatim
- Only the leaf deck matching a card's full deck name holds the card;
  missing ancestors are created cardless; empty name segments are ignored
- tags is always a list; suspended cards are skipped unless requested
- total_cards counts emitted cards only; total_decks counts every node
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from anki_converter.config import CHECK_INTERVAL
from anki_converter.core.options import ClozeAnswerPolicy, ConversionOptions
from anki_converter.core.output import (
    BasicCard,
    ClozeCard,
    ClozeVariation,
    ConversionMetadata,
    CustomCard,
    Deck,
    OutputCard,
    count_cards,
    count_decks,
    iter_cards,
)
from anki_converter.core.records import (
    HIERARCHY_SEPARATOR,
    Card,
    Note,
    NoteKind,
    NoteType,
    NormalizedRecordSet,
    QueueState,
)
from anki_converter.core.text import TextExtractor

logger = logging.getLogger(__name__)

Checkpoint = Callable[[int, int], None]
"""Called as checkpoint(done, total) at bounded intervals inside a stage."""

CLOZE_RE = re.compile(r"\{\{c(\d+)::(.*?)(?:::(.*?))?\}\}", re.DOTALL)
FIELD_REF_RE = re.compile(r"\{\{([^{}]+)\}\}")

CLOZE_PLACEHOLDER = "[...]"
UNNAMED_DECK = "Unnamed Deck"


def _noop_checkpoint(done: int, total: int) -> None:
    return None


def _tick(checkpoint: Checkpoint, done: int, total: int) -> None:
    if done % CHECK_INTERVAL == 0 or done == total:
        checkpoint(done, total)


# ---------------------------------------------------------------------------
# Stage: text extraction
# ---------------------------------------------------------------------------


def extract_note_text(
    records: NormalizedRecordSet,
    options: ConversionOptions,
    checkpoint: Checkpoint = _noop_checkpoint,
) -> Dict[int, Tuple[str, ...]]:
    """Clean every field of every note. Returns note id → cleaned fields."""
    extractor = TextExtractor(options.preserve_formatting)
    total = len(records.notes)
    cleaned: Dict[int, Tuple[str, ...]] = {}
    for done, note in enumerate(records.notes, start=1):
        cleaned[note.id] = tuple(extractor(value) for value in note.fields)
        _tick(checkpoint, done, total)
    if total == 0:
        checkpoint(0, 0)
    return cleaned


# ---------------------------------------------------------------------------
# Cloze
# ---------------------------------------------------------------------------


@dataclass
class _Occurrence:
    field_index: int
    answer: str


def cloze_variations(
    fields: Sequence[str],
    policy: ClozeAnswerPolicy = ClozeAnswerPolicy.FIRST,
) -> List[ClozeVariation]:
    """Build one variation per distinct cloze index found across fields.

    Args:
        fields: Field texts, scanned in order.
        policy: Which occurrence's answer wins when an index repeats.

    Returns:
        Variations sorted by index.
    """
    occurrences: Dict[int, List[_Occurrence]] = {}
    for field_index, text in enumerate(fields):
        for match in CLOZE_RE.finditer(text):
            occurrences.setdefault(int(match.group(1)), []).append(
                _Occurrence(field_index, match.group(2))
            )

    variations = []
    for index in sorted(occurrences):
        found = occurrences[index]
        source = fields[found[0].field_index]

        def mask(match: "re.Match[str]", target: int = index) -> str:
            if int(match.group(1)) != target:
                return match.group(0)
            hint = match.group(3)
            return "[{}]".format(hint) if hint else CLOZE_PLACEHOLDER

        chosen = found[0] if policy == ClozeAnswerPolicy.FIRST else found[-1]
        answers = {o.answer for o in found}
        if len(answers) > 1:
            logger.debug("Cloze c%d has %d differing answers; using %s occurrence",
                         index, len(answers), policy.value)
        variations.append(ClozeVariation(
            index=index,
            masked_text=CLOZE_RE.sub(mask, source),
            answer=chosen.answer,
        ))
    return variations


def _cloze_text(fields: Sequence[str]) -> str:
    for text in fields:
        if CLOZE_RE.search(text):
            return text
    return fields[0] if fields else ""


# ---------------------------------------------------------------------------
# Basic front/back mapping
# ---------------------------------------------------------------------------


def template_field_refs(template_format: str) -> List[str]:
    """Field names a template shows, ignoring FrontSide and section tags."""
    names = []
    for match in FIELD_REF_RE.finditer(template_format):
        ref = match.group(1).strip()
        if not ref or ref[0] in "#^/!":
            continue
        name = ref.rsplit(":", 1)[-1].strip()
        if name and name != "FrontSide":
            names.append(name)
    return names


def front_back_indices(note_type: NoteType) -> Optional[Tuple[int, int]]:
    """Return (front index, back index) for a two-field note type, else None."""
    if note_type.kind == NoteKind.CLOZE or note_type.placeholder:
        return None
    names = list(note_type.field_names)
    if len(names) != 2:
        return None
    lowered = [n.lower() for n in names]
    if "front" in lowered and "back" in lowered:
        return lowered.index("front"), lowered.index("back")
    if note_type.templates:
        first = note_type.templates[0]
        question = [n for n in template_field_refs(first.question_format) if n in names]
        answer = [n for n in template_field_refs(first.answer_format) if n in names]
        if len(set(question)) == 1 and any(n != question[0] for n in answer):
            front = names.index(question[0])
            return front, 1 - front
    return None


def _card_orientation(note_type: NoteType, card: Card, mapping: Tuple[int, int]) -> Tuple[int, int]:
    front, back = mapping
    template = next(
        (t for t in note_type.templates if t.ordinal == card.template_ordinal), None
    )
    if template is None:
        return mapping
    shown = set(template_field_refs(template.question_format))
    names = note_type.field_names
    if names[back] in shown and names[front] not in shown:
        return back, front
    return mapping


# ---------------------------------------------------------------------------
# Stage: card shaping
# ---------------------------------------------------------------------------


def _field_map(note_type: NoteType, values: Sequence[str]) -> Dict[str, str]:
    names = list(note_type.field_names)
    for i in range(len(names), len(values)):
        names.append("Field {}".format(i + 1))
    result: Dict[str, str] = {}
    for i, name in enumerate(names):
        key = name
        suffix = 2
        while key in result:
            key = "{} ({})".format(name, suffix)
            suffix += 1
        result[key] = values[i] if i < len(values) else ""
    return result


def _stats(card: Card) -> Dict[str, object]:
    return {
        "due": card.due,
        "interval": card.interval,
        "ease_factor": card.ease_factor,
        "repetitions": card.repetitions,
        "lapses": card.lapses,
        "queue": card.queue_state.value,
    }


def shape_card(
    card: Card,
    note: Note,
    note_type: NoteType,
    values: Sequence[str],
    options: ConversionOptions,
) -> OutputCard:
    """Build the output object for one card from its note's cleaned fields."""
    common = dict(
        id=str(card.id),
        tags=list(note.tags),
        fields=_field_map(note_type, values),
        stats=_stats(card) if options.include_stats else None,
        suspended=card.queue_state == QueueState.SUSPENDED,
    )

    if note_type.kind == NoteKind.CLOZE and not note_type.placeholder:
        return ClozeCard(
            text=_cloze_text(values),
            clozes=cloze_variations(values, options.cloze_answer_policy),
            **common,
        )

    mapping = front_back_indices(note_type)
    if mapping is not None:
        front, back = _card_orientation(note_type, card, mapping)
        return BasicCard(
            front=values[front] if front < len(values) else "",
            back=values[back] if back < len(values) else "",
            **common,
        )

    return CustomCard(note_type_name=note_type.name, **common)


def shape_cards(
    records: NormalizedRecordSet,
    cleaned: Dict[int, Tuple[str, ...]],
    options: ConversionOptions,
    checkpoint: Checkpoint = _noop_checkpoint,
) -> Dict[int, List[OutputCard]]:
    """Shape every included card. Returns deck id → cards in source order."""
    notes = records.notes_by_id()
    note_types = records.note_types_by_id()
    by_deck: Dict[int, List[OutputCard]] = {}
    total = len(records.cards)
    skipped = 0
    for done, card in enumerate(records.cards, start=1):
        if card.queue_state == QueueState.SUSPENDED and not options.include_suspended:
            skipped += 1
        else:
            note = notes[card.note_id]
            shaped = shape_card(
                card, note, note_types[note.note_type_id], cleaned[note.id], options
            )
            by_deck.setdefault(card.deck_id, []).append(shaped)
        _tick(checkpoint, done, total)
    if total == 0:
        checkpoint(0, 0)
    if skipped:
        logger.info("Skipped %d suspended card(s)", skipped)
    return by_deck


# ---------------------------------------------------------------------------
# Stage: deck tree
# ---------------------------------------------------------------------------


def deck_path(name: str) -> Tuple[str, ...]:
    """Split a full deck name into non-empty, trimmed segments."""
    parts = tuple(p.strip() for p in name.split(HIERARCHY_SEPARATOR))
    parts = tuple(p for p in parts if p)
    return parts or (UNNAMED_DECK,)


class _Node:
    __slots__ = ("deck", "children")

    def __init__(self, name: str) -> None:
        self.deck = Deck(name=name)
        self.children: Dict[str, "_Node"] = {}

    def freeze(self) -> Deck:
        self.deck.subdecks = [child.freeze() for child in self.children.values()]
        return self.deck


def assemble_decks(
    records: NormalizedRecordSet,
    cards_by_deck: Dict[int, List[OutputCard]],
) -> List[Deck]:
    """Build the deck forest from full deck names."""
    roots: Dict[str, _Node] = {}
    for info in sorted(records.decks, key=lambda d: (deck_path(d.name), d.id)):
        level = roots
        node = None
        for part in deck_path(info.name):
            node = level.get(part)
            if node is None:
                node = level[part] = _Node(part)
            level = node.children
        if info.description and not node.deck.description:
            node.deck.description = info.description
        node.deck.cards.extend(cards_by_deck.get(info.id, []))
    return [root.freeze() for root in roots.values()]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_metadata(
    records: NormalizedRecordSet,
    decks: List[Deck],
    source_format: str,
    started_at: float,
    extra_warnings: Sequence[str] = (),
) -> ConversionMetadata:
    """Summarize a finished deck forest.

    Args:
        started_at: time.monotonic() value when the job started.
        extra_warnings: Warnings raised outside the record set (e.g. by
            package extraction).
    """
    emitted = {card.id for card in iter_cards(decks)}
    notes = records.notes_by_id()
    used_types = {
        notes[c.note_id].note_type_id
        for c in records.cards
        if str(c.id) in emitted and c.note_id in notes
    }
    names = sorted({nt.name for nt in records.note_types if nt.id in used_types})
    return ConversionMetadata(
        converted_at=utc_timestamp(),
        source_format=source_format,
        total_decks=count_decks(decks),
        total_cards=count_cards(decks),
        note_type_names=names,
        processing_time_ms=max(0, int((time.monotonic() - started_at) * 1000)),
        schema_version=records.meta.schema_revision,
        warnings=list(extra_warnings) + list(records.warnings),
    )


def build(
    records: NormalizedRecordSet,
    options: Optional[ConversionOptions] = None,
    source_format: str = "unknown",
    started_at: Optional[float] = None,
) -> Tuple[List[Deck], ConversionMetadata]:
    """Run all build stages without progress reporting."""
    options = options or ConversionOptions()
    if started_at is None:
        started_at = time.monotonic()
    cleaned = extract_note_text(records, options)
    cards_by_deck = shape_cards(records, cleaned, options)
    decks = assemble_decks(records, cards_by_deck)
    return decks, build_metadata(records, decks, source_format, started_at)
