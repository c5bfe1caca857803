"""Source format detection from a bounded byte prefix and a filename.

WHY: Users rename files, browsers strip extensions, and Anki itself
writes the same SQLite layout under several names. Routing an input to
the wrong parser produces confusing errors, so detection looks at what
the bytes *are* first and uses the extension only to refine or to fill
in when the bytes say nothing.

HOW: Three signature families are checked against the prefix:
  ZIP     — PK\\x03\\x04 / PK\\x05\\x06 / PK\\x07\\x08 → package formats
  SQLite  — "SQLite format 3\\0"                    → database formats
  text    — tabs and line breaks, no NUL bytes      → tab-separated text
The final (lowercased) extension then picks the member of the family
(.colpkg vs .apkg, .anki21 vs .anki2 vs generic SQLite).

RULES:
- Only the first DETECTION_PREFIX_BYTES bytes are ever inspected
- Signature beats a disagreeing extension
- No signature → extension; neither → SourceFormat.UNKNOWN
- Pure function, no I/O, no state
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, List, Optional

from anki_converter.config import DETECTION_PREFIX_BYTES, EXTENSION_FORMATS


class SourceFormat(str, enum.Enum):
    """Closed set of input formats the pipeline can dispatch on."""

    APKG = "apkg"
    COLPKG = "colpkg"
    ANKI2 = "anki2"
    ANKI21 = "anki21"
    SQLITE = "sqlite"
    TSV = "tsv"
    UNKNOWN = "unknown"


class _Family(str, enum.Enum):
    ARCHIVE = "archive"
    DATABASE = "database"
    TEXT = "text"


ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
SQLITE_SIGNATURE = b"SQLite format 3\x00"

_FAMILY_OF: Dict[SourceFormat, _Family] = {
    SourceFormat.APKG: _Family.ARCHIVE,
    SourceFormat.COLPKG: _Family.ARCHIVE,
    SourceFormat.ANKI2: _Family.DATABASE,
    SourceFormat.ANKI21: _Family.DATABASE,
    SourceFormat.SQLITE: _Family.DATABASE,
    SourceFormat.TSV: _Family.TEXT,
}

# Format assumed when only the signature is known
_FAMILY_DEFAULT: Dict[_Family, SourceFormat] = {
    _Family.ARCHIVE: SourceFormat.APKG,
    _Family.DATABASE: SourceFormat.SQLITE,
    _Family.TEXT: SourceFormat.TSV,
}


@dataclass(frozen=True)
class FormatDetection:
    """Detection outcome.

    RULES:
    - confidence: "high" (signature and extension agree), "medium"
      (signature only or disagreement), "low" (extension only or nothing)
    - method: "both", "signature", "extension", or "none"
    """

    format: SourceFormat
    confidence: str
    method: str


def file_extension(filename: Optional[str]) -> str:
    """Return the final extension, lowercased, with dot ("" when absent)."""
    if not filename:
        return ""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot <= 0 or dot == len(name) - 1:
        return ""
    return name[dot:].lower()


def format_from_extension(filename: Optional[str]) -> SourceFormat:
    key = EXTENSION_FORMATS.get(file_extension(filename))
    return SourceFormat(key) if key else SourceFormat.UNKNOWN


def _looks_like_text(prefix: bytes) -> bool:
    if b"\x00" in prefix:
        return False
    return b"\t" in prefix and (b"\n" in prefix or b"\r" in prefix)


def _signature_family(prefix: bytes) -> Optional[_Family]:
    if prefix.startswith(SQLITE_SIGNATURE):
        return _Family.DATABASE
    if any(prefix.startswith(sig) for sig in ZIP_SIGNATURES):
        return _Family.ARCHIVE
    if _looks_like_text(prefix):
        return _Family.TEXT
    return None


def detect(prefix: bytes, filename: Optional[str] = None) -> FormatDetection:
    """Classify an input from its leading bytes and (optional) filename.

    Args:
        prefix: Leading bytes of the input; anything past
            DETECTION_PREFIX_BYTES is ignored.
        filename: Original file name, used for its extension only.

    Returns:
        FormatDetection with the resolved format, confidence, and method.
    """
    prefix = bytes(prefix[:DETECTION_PREFIX_BYTES])
    family = _signature_family(prefix)
    ext_format = format_from_extension(filename)

    if family is not None:
        if ext_format != SourceFormat.UNKNOWN and _FAMILY_OF[ext_format] == family:
            return FormatDetection(ext_format, "high", "both")
        return FormatDetection(_FAMILY_DEFAULT[family], "medium", "signature")

    if ext_format != SourceFormat.UNKNOWN:
        return FormatDetection(ext_format, "low", "extension")

    return FormatDetection(SourceFormat.UNKNOWN, "low", "none")


def is_archive(fmt: SourceFormat) -> bool:
    return _FAMILY_OF.get(fmt) == _Family.ARCHIVE


def supported_extensions() -> List[str]:
    """Accepted file extensions, sorted."""
    return sorted(EXTENSION_FORMATS)
