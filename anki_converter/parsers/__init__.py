"""Source format parsers — each one yields a NormalizedRecordSet.

WHY: Anki inputs arrive as zip packages, bare SQLite collections of
different schema revisions, or tab-separated text. Keeping each reader
in its own module keeps the pipeline's dispatch a flat lookup.

HOW: archive.py unpacks packages to database bytes, sqlite.py reads
database bytes into records, delimited.py reads text into records.

RULES:
- Parsers raise ConversionError (no stage) for every failure
- Parsers never write to their input
"""
