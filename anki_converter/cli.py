"""Command-line interface for the Anki JSON Converter.

WHY: Batch users (scripts, CI jobs, people with multi-gigabyte
collections) need to convert files from the terminal without a browser
or server. The CLI wires input validation, the conversion pipeline and
file saving behind one command.

HOW: argparse collects the input path, output path and options; the
pipeline runs synchronously on the batch size tier. Progress and status
lines go to stderr; the JSON document is written to --output (or into
it, when --output is a directory).

RULES:
- -i/--input and -o/--output are required; argparse exits 2 without them
- An existing output directory gets a sanitized name derived from the
  deck (single top-level deck) or the input file
- ConversionError: kind, message and guidance on stderr, exit 1
- Ctrl-C cancels the pipeline, exit 130
- Status output goes to stderr (not stdout)
- Python 3.9 compatible: no match/case, no X | Y unions
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from anki_converter import __version__
from anki_converter.config import FORMAT_DESCRIPTIONS, LOG_LEVEL, HostTier
from anki_converter.core.filenames import download_filename
from anki_converter.core.options import ClozeAnswerPolicy, ConversionOptions
from anki_converter.core.pipeline import (
    CancellationToken,
    ConversionPipeline,
    PipelineStage,
    ProgressEvent,
)
from anki_converter.errors import ConversionError

logger = logging.getLogger(__name__)

FORMAT_CHOICES = ["auto"] + list(FORMAT_DESCRIPTIONS)

# Minimum percent advance between in-stage progress lines
_PROGRESS_STEP = 10


def _status(msg: str) -> None:
    """Print a status message to stderr.

    RULES:
    - All status messages go to stderr
    - Always flush after writing
    """
    print(msg, file=sys.stderr, flush=True)


class _ProgressPrinter:
    """Turns ProgressEvents into a handful of stderr lines."""

    def __init__(self) -> None:
        self._stage: Optional[PipelineStage] = None
        self._last_percent = -_PROGRESS_STEP

    def __call__(self, event: ProgressEvent) -> None:
        if event.stage != self._stage or event.percent - self._last_percent >= _PROGRESS_STEP:
            self._stage = event.stage
            self._last_percent = event.percent
            _status("[{:>3}%] {}: {}".format(event.percent, event.stage.value, event.message))


def _resolve_output_path(output: Path, decks: list, input_path: Path) -> Path:
    """Return the file to write; directories get a sanitized deck-based name."""
    if output.is_dir():
        return output / download_filename(decks, source_filename=input_path.name)
    return output


def _options_from_args(args: argparse.Namespace) -> ConversionOptions:
    return ConversionOptions(
        include_stats=args.include_stats,
        include_suspended=args.include_suspended,
        preserve_formatting=not args.plain_text,
        cloze_answer_policy=ClozeAnswerPolicy(args.cloze_answer),
        force_format=None if args.format == "auto" else args.format,
        host_tier=HostTier.BATCH,
        deck_name=args.deck_name,
    )


def run(args: argparse.Namespace) -> int:
    """Run one conversion for parsed arguments; returns the exit code."""
    input_path = Path(args.input).expanduser()
    if not input_path.is_file():
        _status("Error: File not found: {}".format(input_path))
        return 1

    output = Path(args.output).expanduser()
    if not output.is_dir() and not output.parent.is_dir():
        _status("Error: Output directory does not exist: {}".format(output.parent))
        return 1

    token = CancellationToken()
    pipeline = ConversionPipeline(
        options=_options_from_args(args),
        on_progress=_ProgressPrinter(),
        cancel_token=token,
    )

    _status("Converting {}...".format(input_path.name))
    try:
        result = pipeline.convert(input_path)
    except KeyboardInterrupt:
        token.cancel()
        _status("\nCancelled by user.")
        return 130
    except ConversionError as exc:
        _status("Error [{}]: {}".format(exc.kind.value, exc.message))
        if exc.stage:
            _status("  Stage: {}".format(exc.stage))
        _status("  {}".format(exc.guidance))
        return 1

    out_path = _resolve_output_path(output, result.decks, input_path)
    try:
        out_path.write_text(result.to_json(), encoding="utf-8")
    except OSError as exc:
        _status("Error: Could not write {}: {}".format(out_path, exc))
        return 1

    meta = result.metadata
    _status("")
    _status("Done! {} cards in {} decks ({} ms)".format(
        meta.total_cards, meta.total_decks, meta.processing_time_ms))
    for warning in meta.warnings:
        _status("  Warning: {}".format(warning))
    _status("Saved: {}".format(out_path))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable; tests can inspect the parser without running a conversion.
    """
    parser = argparse.ArgumentParser(
        prog="anki-converter",
        description="Convert Anki packages, collection databases and "
                    "tab-separated exports into normalized JSON.",
    )

    parser.add_argument(
        "-i", "--input",
        required=True,
        help="Path to the .apkg, .colpkg, .anki2, .anki21, SQLite or .tsv/.txt file.",
    )

    parser.add_argument(
        "-o", "--output",
        required=True,
        help="Output JSON file, or an existing directory to write into.",
    )

    parser.add_argument(
        "--include-stats",
        action="store_true",
        help="Add scheduling statistics (due, interval, ease, reviews, lapses, queue).",
    )

    parser.add_argument(
        "--include-suspended",
        action="store_true",
        help="Include suspended cards, marked with \"suspended\": true.",
    )

    parser.add_argument(
        "--format",
        choices=FORMAT_CHOICES,
        default="auto",
        help="Input format; 'auto' detects it from content and extension (default: %(default)s).",
    )

    parser.add_argument(
        "--deck-name",
        default=None,
        help="Deck name for tab-separated input (default: the input file name).",
    )

    parser.add_argument(
        "--plain-text",
        action="store_true",
        help="Drop emphasis instead of converting it to **bold**/*italic* markers.",
    )

    parser.add_argument(
        "--cloze-answer",
        choices=[p.value for p in ClozeAnswerPolicy],
        default=ClozeAnswerPolicy.FIRST.value,
        help="Which occurrence supplies a repeated cloze's answer (default: %(default)s).",
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s {}".format(__version__),
    )

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``anki-converter`` and ``python -m anki_converter``.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run(args))


if __name__ == "__main__":
    main()
