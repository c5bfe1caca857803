"""Core record model, text extraction, and output assembly modules.

WHY: The core package contains the stable heart of the converter —
the intermediate record dataclasses, the output model, and the logic
that turns one into the other. Every parser feeds it; every host
consumes it through the pipeline.

HOW: records.py defines the NormalizedRecordSet, output.py the JSON
document model, detection.py classifies inputs, text.py cleans field
HTML, builder.py shapes cards and decks, pipeline.py orchestrates the
stages, filenames.py produces safe output names.

RULES:
- Record and output dataclasses are the contract — change with care
- Core logic is source-agnostic — no format-specific parsing here
- Nothing in core holds mutable module-level state
"""
