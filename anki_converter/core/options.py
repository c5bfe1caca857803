"""Per-job conversion options.

WHY: The CLI, the HTTP API and tests all configure the same pipeline.
One frozen dataclass keeps the knobs and their defaults in one place.

RULES:
- Suspended cards are excluded unless include_suspended is set
- Statistics are emitted only when include_stats is set
- force_format skips detection entirely
- cloze_answer_policy decides which answer wins when one cloze index
  appears several times with different text (first by default)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from anki_converter.config import HostTier


class ClozeAnswerPolicy(str, enum.Enum):
    """Which occurrence supplies a cloze variation's answer."""

    FIRST = "first"
    LAST = "last"


@dataclass(frozen=True)
class ConversionOptions:
    include_stats: bool = False
    include_suspended: bool = False
    preserve_formatting: bool = True
    cloze_answer_policy: ClozeAnswerPolicy = ClozeAnswerPolicy.FIRST
    force_format: Optional[str] = None
    host_tier: HostTier = HostTier.BATCH
    deck_name: Optional[str] = None
