"""Pydantic response models for the HTTP API.

WHY: FastAPI endpoints need typed schemas for response serialization and
the OpenAPI docs at /docs. Pydantic models enforce field types at
runtime and generate the JSON Schema clients see.

HOW: One model per response shape. Job status and error bodies mirror
the internal JobStatus values and ConversionError.to_dict() exactly.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
- Error details for failed conversions keep the ErrorKind value intact
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProgressInfo(BaseModel):
    """Last progress event reported by the pipeline."""

    stage: str = Field(description="Pipeline stage (detecting, parsing, extracting, "
                                   "transforming, building, done).")
    percent: int = Field(description="Overall progress, 0-100, never decreasing.")
    message: str = Field(description="Human-readable progress message.")


class ConversionErrorInfo(BaseModel):
    """Structured conversion failure.

    RULES:
    - kind is one of the ErrorKind values (e.g. 'corrupted_file')
    - guidance tells the user what to try next
    """

    kind: str = Field(description="Error category, e.g. 'invalid_format' or 'corrupted_file'.")
    message: str = Field(description="What went wrong.")
    stage: Optional[str] = Field(default=None, description="Pipeline stage that failed.")
    source: Optional[str] = Field(default=None, description="File or record the error refers to.")
    guidance: str = Field(description="What the user can try next.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Extra machine-readable context.")


class JobResponse(BaseModel):
    """Conversion job status response.

    RULES:
    - error is only set when status is 'failed' or 'cancelled'
    - download_name is only set when status is 'completed'
    """

    id: str = Field(description="Unique job identifier.")
    status: str = Field(description="Current job status.")
    filename: str = Field(description="Original uploaded filename.")
    created_at: float = Field(description="Job creation timestamp (Unix epoch seconds).")
    options: Dict[str, Any] = Field(description="Conversion options used for this job.")
    progress: Optional[ProgressInfo] = Field(
        default=None,
        description="Latest progress event, once the conversion has started.",
    )
    error: Optional[ConversionErrorInfo] = Field(
        default=None,
        description="Failure details, only present when status is 'failed' or 'cancelled'.",
    )
    download_name: Optional[str] = Field(
        default=None,
        description="File name of the JSON result, only present when status is 'completed'.",
    )

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "550e8400e29b41d4a716446655440000",
                "status": "running",
                "filename": "japanese.apkg",
                "created_at": 1739959200.0,
                "options": {"include_stats": False, "include_suspended": False},
                "progress": {"stage": "extracting", "percent": 58,
                             "message": "Notes 1200/3000"},
                "error": None,
                "download_name": None,
            }
        ]
    }}


class JobCreatedResponse(BaseModel):
    """Response returned when a new conversion job is submitted."""

    id: str = Field(description="Unique job identifier for polling status.")
    status: str = Field(description="Initial job status (always 'pending').")
    filename: str = Field(description="Original uploaded filename.")

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "550e8400e29b41d4a716446655440000",
                "status": "pending",
                "filename": "japanese.apkg",
            }
        ]
    }}


class FormatInfo(BaseModel):
    """One accepted input format."""

    key: str = Field(description="Format identifier, e.g. 'apkg'.")
    description: str = Field(description="Human-readable description.")
    extensions: List[str] = Field(description="File extensions mapped to this format.")


class ErrorResponse(BaseModel):
    """Standard error response body.

    RULES:
    - detail is always a human-readable error message
    """

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
