"""Configuration constants, format mappings, and .env loading.

WHY: Centralizes all configurable values so they are easy to find,
update, and override. Resource ceilings, accepted file extensions and
checkpoint intervals are plain data structures, not buried in logic, so both
humans and coding agents can modify them confidently.

HOW: python-dotenv loads the .env file on import. Constants are defined
as module-level dicts, tuples, and ints. Size caps can be overridden via
environment variables; max_input_bytes() resolves the cap for a host tier.

RULES:
- Two size tiers: interactive (server uploads) and batch (CLI)
- Caps are enforced before any buffer proportional to the input is allocated
- EXTENSION_FORMATS maps lowercase extensions (with dot) to format keys
- All defaults can be overridden via environment variables
- Tables here are immutable after import; no job mutates them
"""

from __future__ import annotations

import enum
import os

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError("{} must be an integer, got {!r}".format(name, raw))
    if value <= 0:
        raise ValueError("{} must be positive, got {}".format(name, value))
    return value


# ---------------------------------------------------------------------------
# Resource ceilings
# ---------------------------------------------------------------------------

MIB = 1024 * 1024

MAX_INPUT_BYTES_INTERACTIVE = _env_int("ANKI_CONVERTER_MAX_INTERACTIVE_BYTES", 500 * MIB)
"""Input cap for uploads handled by the HTTP server."""

MAX_INPUT_BYTES_BATCH = _env_int("ANKI_CONVERTER_MAX_BATCH_BYTES", 2048 * MIB)
"""Input cap for batch conversions run from the command line."""

MAX_COMPRESSION_RATIO = _env_int("ANKI_CONVERTER_MAX_COMPRESSION_RATIO", 10)
"""Per-entry ceiling on uncompressed/compressed size inside archives."""

DETECTION_PREFIX_BYTES = 4096
"""Bytes of input handed to the format detector."""

CHECK_INTERVAL = 200
"""Records processed between progress/cancellation checkpoints."""

LOG_LEVEL = os.getenv("ANKI_CONVERTER_LOG_LEVEL", "INFO").upper()


class HostTier(str, enum.Enum):
    """Which size ceiling applies to a conversion.

    RULES:
    - interactive: request/response hosts (HTTP uploads)
    - batch: long-running local hosts (CLI)
    """

    INTERACTIVE = "interactive"
    BATCH = "batch"


def max_input_bytes(tier: HostTier) -> int:
    """Return the input size cap for a host tier."""
    if tier == HostTier.INTERACTIVE:
        return MAX_INPUT_BYTES_INTERACTIVE
    return MAX_INPUT_BYTES_BATCH


# ---------------------------------------------------------------------------
# Accepted file extensions
# ---------------------------------------------------------------------------

EXTENSION_FORMATS: dict[str, str] = {
    ".apkg": "apkg",
    ".colpkg": "colpkg",
    ".anki2": "anki2",
    ".anki21": "anki21",
    ".db": "sqlite",
    ".sqlite": "sqlite",
    ".sqlite3": "sqlite",
    ".tsv": "tsv",
    ".txt": "tsv",
}
"""Accepted source extensions (lowercase, with dot) → source format key."""

FORMAT_DESCRIPTIONS: dict[str, str] = {
    "apkg": "Anki deck package (zip archive)",
    "colpkg": "Anki collection package (zip archive)",
    "anki2": "Anki collection database (legacy)",
    "anki21": "Anki 2.1 collection database",
    "sqlite": "Anki collection as plain SQLite file",
    "tsv": "Tab-separated notes (Anki text export)",
}

# ---------------------------------------------------------------------------
# Output defaults
# ---------------------------------------------------------------------------

DEFAULT_DECK_NAME = "Imported Deck"
"""Name of the synthetic deck created for tab-separated input."""
