"""Staged conversion orchestrator with progress and cancellation.

WHY: Hosts (CLI, HTTP jobs) need one call that turns an input into a
ConversionResult while reporting where it is, stopping promptly when the
user gives up, and failing with a ConversionError that names the stage.

HOW: ConversionPipeline walks a fixed stage sequence:
  DETECTING → PARSING → EXTRACTING → TRANSFORMING → BUILDING → DONE
with FAILED as the terminal state on any error. Each stage owns a slice
of the 0–100 progress range (STAGE_RANGES); long loops report through a
checkpoint callback that also polls the CancellationToken. Parsing is
dispatched through PARSERS, a plain dict from SourceFormat to function.

RULES:
- Progress percent never decreases; 100 is only reported by DONE
- A failing progress callback is logged and otherwise ignored
- Cancellation is checked at every stage boundary and every
  CHECK_INTERVAL records; it raises ConversionError(kind=CANCELLED)
- The size cap is checked before the input is read into memory
- The detector only ever sees the first DETECTION_PREFIX_BYTES bytes
- ConversionErrors get the current stage attached; anything else is
  wrapped as UNKNOWN and chained
- Each convert() call owns its data; pipelines share no mutable state
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from anki_converter import errors
from anki_converter.config import DETECTION_PREFIX_BYTES, max_input_bytes
from anki_converter.core import builder
from anki_converter.core.detection import FormatDetection, SourceFormat, detect
from anki_converter.core.options import ConversionOptions
from anki_converter.core.output import ConversionResult, validate
from anki_converter.core.records import NormalizedRecordSet
from anki_converter.errors import ConversionError, ErrorKind
from anki_converter.parsers import archive, delimited, sqlite

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, str, "os.PathLike[str]"]


class PipelineStage(str, enum.Enum):
    """Pipeline state machine.

    RULES:
    - idle: constructed, convert() not called yet
    - done and failed are terminal
    """

    IDLE = "idle"
    DETECTING = "detecting"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    BUILDING = "building"
    DONE = "done"
    FAILED = "failed"


STAGE_RANGES: Dict[PipelineStage, Tuple[int, int]] = {
    PipelineStage.DETECTING: (0, 5),
    PipelineStage.PARSING: (5, 45),
    PipelineStage.EXTRACTING: (45, 75),
    PipelineStage.TRANSFORMING: (75, 92),
    PipelineStage.BUILDING: (92, 99),
    PipelineStage.DONE: (100, 100),
}
"""Disjoint progress ranges, in stage order."""


@dataclass(frozen=True)
class ProgressEvent:
    stage: PipelineStage
    percent: int
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"stage": self.stage.value, "percent": self.percent, "message": self.message}


ProgressCallback = Callable[[ProgressEvent], None]


class CancellationToken:
    """Thread-safe cancellation flag shared between a host and a pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


# ---------------------------------------------------------------------------
# Parse dispatch
# ---------------------------------------------------------------------------

ParseOutcome = Tuple[NormalizedRecordSet, List[str]]


def _parse_package(data: bytes, filename: Optional[str], options: ConversionOptions) -> ParseOutcome:
    extracted = archive.extract(data, max_total_bytes=max_input_bytes(options.host_tier))
    records = sqlite.read(extracted.data)
    return records, list(extracted.warnings)


def _parse_database(data: bytes, filename: Optional[str], options: ConversionOptions) -> ParseOutcome:
    return sqlite.read(data), []


def _parse_text(data: bytes, filename: Optional[str], options: ConversionOptions) -> ParseOutcome:
    deck_name = options.deck_name
    if not deck_name and filename:
        deck_name = Path(filename).stem or None
    text = delimited.decode(data)
    return delimited.parse(text, deck_name=deck_name), []


PARSERS: Dict[SourceFormat, Callable[[bytes, Optional[str], ConversionOptions], ParseOutcome]] = {
    SourceFormat.APKG: _parse_package,
    SourceFormat.COLPKG: _parse_package,
    SourceFormat.ANKI2: _parse_database,
    SourceFormat.ANKI21: _parse_database,
    SourceFormat.SQLITE: _parse_database,
    SourceFormat.TSV: _parse_text,
}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ConversionPipeline:
    """Runs one conversion through all stages.

    Args:
        options: Conversion knobs; defaults to ConversionOptions().
        on_progress: Called with a ProgressEvent at each step.
        cancel_token: Polled at stage boundaries and checkpoints.
    """

    def __init__(
        self,
        options: Optional[ConversionOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.options = options or ConversionOptions()
        self.on_progress = on_progress
        self.cancel_token = cancel_token or CancellationToken()
        self.stage = PipelineStage.IDLE
        self._percent = 0

    # -- progress and cancellation ------------------------------------------

    def _check_cancelled(self) -> None:
        if self.cancel_token.is_cancelled:
            raise errors.cancelled()

    def _emit(self, percent: float, message: str) -> None:
        ceiling = 100 if self.stage == PipelineStage.DONE else 99
        self._percent = max(self._percent, min(int(percent), ceiling))
        if self.on_progress is None:
            return
        event = ProgressEvent(self.stage, self._percent, message)
        try:
            self.on_progress(event)
        except Exception:
            logger.exception("Progress callback failed at %s", self.stage.value)

    def _enter(self, stage: PipelineStage, message: str) -> None:
        self._check_cancelled()
        self.stage = stage
        self._emit(STAGE_RANGES[stage][0], message)

    def _checkpoint(self, label: str) -> builder.Checkpoint:
        low, high = STAGE_RANGES[self.stage]

        def checkpoint(done: int, total: int) -> None:
            self._check_cancelled()
            fraction = done / total if total else 1.0
            self._emit(low + (high - low) * fraction, "{} {}/{}".format(label, done, total))

        return checkpoint

    # -- input --------------------------------------------------------------

    def _check_size(self, size: int, source: Optional[str]) -> None:
        limit = max_input_bytes(self.options.host_tier)
        if size > limit:
            raise errors.resource_limit(
                "Input is {} bytes; the {} limit is {} bytes.".format(
                    size, self.options.host_tier.value, limit
                ),
                source=source,
                details={"size": size, "limit": limit},
            )

    def _open(self, source: Source, filename: Optional[str]) -> Tuple[Callable[[], bytes], bytes, Optional[str]]:
        """Return (full reader, detection prefix, filename) after the size check."""
        if isinstance(source, (bytes, bytearray)):
            self._check_size(len(source), filename)
            data = bytes(source)
            return (lambda: data), data[:DETECTION_PREFIX_BYTES], filename

        path = Path(source)
        name = filename or path.name
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise errors.invalid_format(
                "Input file could not be opened: {}".format(exc), source=str(path)
            ) from exc
        self._check_size(size, name)

        def read_all() -> bytes:
            try:
                return path.read_bytes()
            except OSError as exc:
                raise errors.corrupted_file(
                    "Input file could not be read: {}".format(exc), source=str(path)
                ) from exc

        try:
            with open(path, "rb") as f:
                prefix = f.read(DETECTION_PREFIX_BYTES)
        except OSError as exc:
            raise errors.invalid_format(
                "Input file could not be opened: {}".format(exc), source=str(path)
            ) from exc
        return read_all, prefix, name

    def _resolve_format(self, prefix: bytes, filename: Optional[str]) -> FormatDetection:
        forced = self.options.force_format
        if forced and forced != "auto":
            try:
                return FormatDetection(SourceFormat(forced), "high", "forced")
            except ValueError:
                raise errors.invalid_format(
                    "Unknown format '{}'. Choose one of: {}".format(
                        forced, ", ".join(f.value for f in PARSERS)
                    ),
                    source="force_format",
                )
        return detect(prefix, filename)

    # -- stages -------------------------------------------------------------

    def _run(self, source: Source, filename: Optional[str], started_at: float) -> ConversionResult:
        self._enter(PipelineStage.DETECTING, "Detecting input format")
        read_all, prefix, filename = self._open(source, filename)
        detection = self._resolve_format(prefix, filename)
        if detection.format not in PARSERS:
            raise errors.invalid_format(
                "Could not recognise the input as an Anki package, collection "
                "database, or tab-separated text file.",
                source=filename,
            )
        logger.info("Detected %s (confidence %s, via %s)",
                    detection.format.value, detection.confidence, detection.method)
        self._emit(STAGE_RANGES[PipelineStage.DETECTING][1],
                   "Detected {}".format(detection.format.value))

        self._enter(PipelineStage.PARSING, "Reading {}".format(detection.format.value))
        data = read_all()
        records, extra_warnings = PARSERS[detection.format](data, filename, self.options)
        del data
        self._emit(STAGE_RANGES[PipelineStage.PARSING][1],
                   "Read {} notes and {} cards".format(len(records.notes), len(records.cards)))

        self._enter(PipelineStage.EXTRACTING, "Cleaning field text")
        cleaned = builder.extract_note_text(records, self.options, self._checkpoint("Notes"))

        self._enter(PipelineStage.TRANSFORMING, "Shaping cards")
        cards_by_deck = builder.shape_cards(records, cleaned, self.options, self._checkpoint("Cards"))

        self._enter(PipelineStage.BUILDING, "Building deck tree")
        decks = builder.assemble_decks(records, cards_by_deck)
        metadata = builder.build_metadata(
            records, decks, detection.format.value, started_at, extra_warnings
        )
        result = ConversionResult(decks=decks, metadata=metadata)
        validate(result.to_dict())

        self._check_cancelled()
        self.stage = PipelineStage.DONE
        self._emit(100, "Converted {} cards in {} decks".format(
            metadata.total_cards, metadata.total_decks))
        return result

    def convert(self, source: Source, filename: Optional[str] = None) -> ConversionResult:
        """Convert bytes or a file path into a ConversionResult.

        Args:
            source: Raw input bytes, or a path to the input file.
            filename: Original file name; used for extension hints and as
                the synthetic deck name for text input. Defaults to the
                path's name when source is a path.

        Raises:
            ConversionError: On any failure, with the failing stage attached.
        """
        started_at = time.monotonic()
        try:
            return self._run(source, filename, started_at)
        except ConversionError as exc:
            exc.with_stage(self.stage.value)
            self.stage = PipelineStage.FAILED
            if exc.kind == ErrorKind.CANCELLED:
                logger.info("Conversion cancelled during %s", exc.stage)
            else:
                logger.error("Conversion failed: %s", exc)
            raise
        except Exception as exc:
            stage = self.stage.value
            self.stage = PipelineStage.FAILED
            logger.exception("Unexpected failure during %s", stage)
            raise ConversionError(
                ErrorKind.UNKNOWN,
                "Unexpected internal error: {}".format(exc),
                stage=stage,
                details={"exception": type(exc).__name__},
            ) from exc


def convert(
    source: Source,
    filename: Optional[str] = None,
    options: Optional[ConversionOptions] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ConversionResult:
    """Convert one input with a fresh pipeline."""
    pipeline = ConversionPipeline(options, on_progress, cancel_token)
    return pipeline.convert(source, filename)
