"""Anki JSON Converter — flashcard collections to normalized JSON.

WHY: Anki stores decks in zipped SQLite collections whose schema has
drifted across releases, with card content wrapped in presentation HTML.
Consumers that just want the cards (study tools, search indexes, LLM
pipelines) need one stable, documented JSON shape instead.

HOW: Staged pipeline — detect (signature + extension), parse (archive →
SQLite schema reader, or tab-separated text) into a NormalizedRecordSet,
extract plain text from field HTML, shape cards, assemble the deck tree.
Each stage is independently testable.

RULES:
- All parsers produce the same NormalizedRecordSet
- Adding a new source format = one parser module + one dispatch entry
- The JSON document shape is pinned by output_schema.json
"""

__version__ = "0.1.0"
