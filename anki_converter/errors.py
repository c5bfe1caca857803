"""Structured error taxonomy for conversions.

WHY: Hosts (CLI, HTTP API) must tell users *what* went wrong and *what to
try next* without parsing exception text. Raw sqlite3/zipfile/decode
errors are meaningless to someone who just exported a deck from Anki.

HOW: A single ConversionError exception carries an ErrorKind, a message,
the pipeline stage (attached by the orchestrator), an optional source
identifier (file name, note id, table name), a details dict, and
guidance text defaulted per kind.

RULES:
- Parsers raise ConversionError without a stage; the pipeline attaches it
- str(error) always contains the kind, the message, and the guidance
- Lower-level exceptions are chained with ``raise ... from exc``
- Cancellation is a ConversionError of kind CANCELLED, never a bare flag
"""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    """Closed set of failure categories.

    HOW: Inherits from str so values serialize cleanly to JSON.

    RULES:
    - invalid_format: input could not be classified as any supported format
    - corrupted_file: archive or database is structurally invalid
    - unsupported_version: collection schema revision is entirely unknown
    - parse_error: tab-separated text or field-level structure is broken
    - resource_limit_exceeded: size cap or decompression-ratio cap tripped
    - cancelled: the caller cancelled the job
    - unknown: unexpected internal fault (always wrapped)
    """

    INVALID_FORMAT = "invalid_format"
    CORRUPTED_FILE = "corrupted_file"
    UNSUPPORTED_VERSION = "unsupported_version"
    PARSE_ERROR = "parse_error"
    RESOURCE_LIMIT_EXCEEDED = "resource_limit_exceeded"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


DEFAULT_GUIDANCE: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_FORMAT: (
        "Use an Anki export (.apkg, .colpkg, .anki2, .anki21), a SQLite "
        "collection (.db, .sqlite, .sqlite3) or a tab-separated text file (.tsv, .txt)."
    ),
    ErrorKind.CORRUPTED_FILE: (
        "Re-export the deck from Anki (File > Export) and try again."
    ),
    ErrorKind.UNSUPPORTED_VERSION: (
        "Export again from Anki with 'Support older Anki versions' enabled."
    ),
    ErrorKind.PARSE_ERROR: (
        "Check that the file is UTF-8 text with one note per line and "
        "fields separated by tabs."
    ),
    ErrorKind.RESOURCE_LIMIT_EXCEEDED: (
        "Split the collection into smaller decks, or convert it with the "
        "command-line tool, which allows larger inputs."
    ),
    ErrorKind.CANCELLED: "Start the conversion again when ready.",
    ErrorKind.UNKNOWN: (
        "This is a bug in the converter. Please report it together with "
        "the input file if possible."
    ),
}


class ConversionError(Exception):
    """A conversion failure with kind, stage, and actionable guidance.

    RULES:
    - kind is always an ErrorKind
    - stage is None until the pipeline attaches the failing stage
    - guidance falls back to DEFAULT_GUIDANCE[kind]
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        stage: Optional[str] = None,
        source: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        guidance: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.stage = stage
        self.source = source
        self.details = details or {}
        self.guidance = guidance or DEFAULT_GUIDANCE[kind]
        super().__init__(str(self))

    def __str__(self) -> str:
        where = ""
        if self.stage:
            where = " during {}".format(self.stage)
        if self.source:
            where += " ({})".format(self.source)
        return "[{}]{}: {} {}".format(self.kind.value, where, self.message, self.guidance)

    def with_stage(self, stage: str) -> "ConversionError":
        """Attach the pipeline stage if none is set yet; returns self."""
        if self.stage is None:
            self.stage = stage
            self.args = (str(self),)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON hosts (HTTP error bodies, job status)."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "stage": self.stage,
            "source": self.source,
            "guidance": self.guidance,
            "details": dict(self.details),
        }


# Convenience constructors used by the parsers


def invalid_format(message: str, **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.INVALID_FORMAT, message, **kwargs)


def corrupted_file(message: str, **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.CORRUPTED_FILE, message, **kwargs)


def unsupported_version(message: str, **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.UNSUPPORTED_VERSION, message, **kwargs)


def parse_error(message: str, **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.PARSE_ERROR, message, **kwargs)


def resource_limit(message: str, **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.RESOURCE_LIMIT_EXCEEDED, message, **kwargs)


def cancelled(message: str = "Conversion cancelled.", **kwargs: Any) -> ConversionError:
    return ConversionError(ErrorKind.CANCELLED, message, **kwargs)
