"""Package (.apkg / .colpkg) unpacking with zip-bomb protection.

WHY: Anki packages are zip archives holding one SQLite collection plus
numbered media files. Packages come from strangers on the internet, so
every entry's declared sizes are checked before a single byte is
inflated, and the database is located by name rather than by position.

HOW: zipfile.ZipFile over an in-memory buffer. infolist() gives each
entry's declared compressed and uncompressed size; these are checked
against MAX_COMPRESSION_RATIO and the input cap up front. The database
entry is then looked up newest-revision-first and read.

RULES:
- Per-entry ratio check: file_size > ratio × max(compress_size, 1) fails
- Sum of declared uncompressed sizes must not exceed the input cap
- Database lookup order: collection.anki21, then collection.anki2
- A package holding only collection.anki21b is UNSUPPORTED_VERSION; one
  holding it next to an older database converts the older one with a warning
- The media manifest (media21 or media) is noted, never required
- .apkg and .colpkg share this exact logic
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from anki_converter import errors
from anki_converter.config import MAX_COMPRESSION_RATIO, MAX_INPUT_BYTES_BATCH
from anki_converter.core.detection import SQLITE_SIGNATURE

logger = logging.getLogger(__name__)

DATABASE_ENTRIES = ("collection.anki21", "collection.anki2")
"""Embedded database names, newest revision first."""

ZSTD_DATABASE_ENTRY = "collection.anki21b"
MEDIA_MANIFEST_ENTRIES = ("media21", "media")


@dataclass(frozen=True)
class ExtractedDatabase:
    """The collection database pulled out of a package.

    RULES:
    - data starts with the SQLite signature
    - media_manifest_name is None when the package carries no manifest
    - media_count is the number of manifest entries when the manifest is
      the legacy JSON map, else None
    """

    data: bytes
    name: str
    media_manifest_name: Optional[str] = None
    media_count: Optional[int] = None
    warnings: Tuple[str, ...] = ()


def _check_sizes(entries: Dict[str, zipfile.ZipInfo], max_ratio: int, max_total: int) -> None:
    total = 0
    for name, info in entries.items():
        if info.file_size > max_ratio * max(info.compress_size, 1):
            raise errors.resource_limit(
                "Archive entry '{}' expands {} bytes to {} bytes, over the {}x limit.".format(
                    name, info.compress_size, info.file_size, max_ratio
                ),
                source=name,
                details={
                    "compressed_size": info.compress_size,
                    "uncompressed_size": info.file_size,
                    "max_ratio": max_ratio,
                },
            )
        total += info.file_size
        if total > max_total:
            raise errors.resource_limit(
                "Archive contents exceed the {} byte limit.".format(max_total),
                details={"declared_total": total, "limit": max_total},
            )


def _media_manifest(zf: zipfile.ZipFile, entries: Dict[str, zipfile.ZipInfo]) -> tuple:
    """Return (manifest name, entry count or None); never fails the extraction."""
    for name in MEDIA_MANIFEST_ENTRIES:
        if name not in entries:
            continue
        count = None
        try:
            manifest = json.loads(zf.read(entries[name]).decode("utf-8"))
            if isinstance(manifest, dict):
                count = len(manifest)
        except (ValueError, UnicodeDecodeError, zipfile.BadZipFile, zlib.error,
                OSError, EOFError, RuntimeError, NotImplementedError) as exc:
            # media21 is zstd-compressed protobuf; only its presence matters
            logger.debug("Media manifest %s not readable as JSON: %s", name, exc)
        return name, count
    return None, None


def extract(
    archive_bytes: bytes,
    max_ratio: int = MAX_COMPRESSION_RATIO,
    max_total_bytes: int = MAX_INPUT_BYTES_BATCH,
) -> ExtractedDatabase:
    """Pull the collection database out of an Anki package.

    Args:
        archive_bytes: Full contents of the .apkg/.colpkg file.
        max_ratio: Per-entry uncompressed/compressed ceiling.
        max_total_bytes: Ceiling on the sum of declared uncompressed sizes.

    Returns:
        ExtractedDatabase with the raw SQLite bytes.

    Raises:
        ConversionError: CORRUPTED_FILE, UNSUPPORTED_VERSION, or
            RESOURCE_LIMIT_EXCEEDED.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as exc:
        raise errors.corrupted_file(
            "The package is not a readable zip archive: {}".format(exc)
        ) from exc

    with zf:
        entries = {info.filename: info for info in zf.infolist() if not info.is_dir()}
        if not entries:
            raise errors.corrupted_file("The package is empty; no files found in the archive.")

        _check_sizes(entries, max_ratio, max_total_bytes)

        db_name = next((name for name in DATABASE_ENTRIES if name in entries), None)
        if db_name is None:
            if ZSTD_DATABASE_ENTRY in entries:
                raise errors.unsupported_version(
                    "The package only contains the newest compressed collection "
                    "format ({}).".format(ZSTD_DATABASE_ENTRY),
                    source=ZSTD_DATABASE_ENTRY,
                )
            raise errors.corrupted_file(
                "The package is missing the Anki database. Expected one of: {}".format(
                    ", ".join(DATABASE_ENTRIES)
                ),
                details={"available": sorted(entries)[:10], "total_files": len(entries)},
            )

        try:
            data = zf.read(entries[db_name])
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError,
                RuntimeError, NotImplementedError) as exc:
            raise errors.corrupted_file(
                "Failed to decompress {}: {}".format(db_name, exc), source=db_name
            ) from exc

        manifest_name, media_count = _media_manifest(zf, entries)

    if not data:
        raise errors.corrupted_file("The Anki database file is empty.", source=db_name)
    if not data.startswith(SQLITE_SIGNATURE):
        raise errors.corrupted_file(
            "'{}' in the package is not a SQLite database.".format(db_name), source=db_name
        )

    warnings: List[str] = []
    if ZSTD_DATABASE_ENTRY in entries:
        # Newer exports keep a legacy stub next to the real collection
        message = (
            "Package also contains {}, which cannot be read; converted {} "
            "instead, which may be an older or placeholder copy.".format(
                ZSTD_DATABASE_ENTRY, db_name
            )
        )
        logger.warning(message)
        warnings.append(message)

    logger.info(
        "Extracted %s (%d bytes) from package with %d entries",
        db_name, len(data), len(entries),
    )
    return ExtractedDatabase(
        data=data,
        name=db_name,
        media_manifest_name=manifest_name,
        media_count=media_count,
        warnings=tuple(warnings),
    )
