"""FastAPI application exposing conversions over HTTP, with OpenAPI docs.

WHY: Web front ends and automation tools (curl, n8n, other services)
need to convert decks without installing the CLI. Uploads can be large
and conversions take a while, so the API is job-based: submit, poll,
download.

HOW: A single FastAPI app exposes six endpoints grouped by tags.
POST /conversions streams the multipart upload into a job directory
(enforcing the interactive size tier), creates a job, and runs the
conversion pipeline in a BackgroundTasks worker. Other endpoints poll
status, download the JSON, cancel/delete, list formats, and report
health.

RULES:
- All endpoints have OpenAPI descriptions on every parameter and response
- Error responses use a consistent ErrorResponse schema
- Unsupported extension → 400, job cap → 429, oversize upload → 413
- Uploads use the interactive size tier
- The job store is a module-level singleton with periodic TTL cleanup
- DELETE cancels a running conversion through its CancellationToken
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, List

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from anki_converter import __version__
from anki_converter.config import (
    EXTENSION_FORMATS,
    FORMAT_DESCRIPTIONS,
    LOG_LEVEL,
    HostTier,
    max_input_bytes,
)
from anki_converter.core.detection import file_extension, supported_extensions
from anki_converter.core.filenames import download_filename
from anki_converter.core.options import ConversionOptions
from anki_converter.core.pipeline import ConversionPipeline, ProgressEvent
from anki_converter.errors import ConversionError, ErrorKind
from anki_converter.server.jobs import Job, JobStatus, JobStore
from anki_converter.server.models import (
    ErrorResponse,
    FormatInfo,
    HealthResponse,
    JobCreatedResponse,
    JobResponse,
)

logger = logging.getLogger(__name__)

RESULT_FILENAME = "result.json"
UPLOAD_CHUNK_BYTES = 1024 * 1024

# ---------------------------------------------------------------------------
# App and store setup
# ---------------------------------------------------------------------------

job_store = JobStore()


async def _periodic_cleanup() -> None:
    """Run job cleanup every 5 minutes."""
    while True:
        await asyncio.sleep(300)
        job_store.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start periodic cleanup on startup, cancel on shutdown."""
    task = asyncio.create_task(_periodic_cleanup())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    lifespan=lifespan,
    title="Anki JSON Converter API",
    description=(
        "REST API for converting Anki packages (.apkg, .colpkg), collection "
        "databases and tab-separated exports into normalized JSON. Submit a "
        "file, poll for progress, and download the result."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _job_to_response(job: Job) -> JobResponse:
    """Convert an internal Job dataclass to a JobResponse Pydantic model."""
    return JobResponse(
        id=job.id,
        status=job.status.value,
        filename=job.filename,
        created_at=job.created_at,
        options=job.options,
        progress=job.progress,
        error=job.error,
        download_name=job.download_name if job.status == JobStatus.COMPLETED else None,
    )


def _validate_file_extension(filename: str) -> None:
    """Raise HTTPException if the file extension is not accepted."""
    ext = file_extension(filename)
    if ext not in EXTENSION_FORMATS:
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type '{}'. Supported formats: {}".format(
                ext or filename, ", ".join(supported_extensions())
            ),
        )


def _get_job_or_404(job_id: str) -> Job:
    job = job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return job


async def _save_upload(file: UploadFile, job: Job) -> int:
    """Stream the upload into the job directory, enforcing the size tier.

    Returns the number of bytes written. Deletes the job and raises 413
    as soon as the limit is crossed.
    """
    limit = max_input_bytes(HostTier.INTERACTIVE)
    size = 0
    with open(job.input_path, "wb") as out:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            size += len(chunk)
            if size > limit:
                break
            out.write(chunk)
    if size > limit:
        job_store.delete_job(job.id)
        raise HTTPException(
            status_code=413,
            detail="Upload exceeds the {} byte limit. Use the command-line "
                   "tool for larger collections.".format(limit),
        )
    return size


def _run_conversion_job(job_id: str, store: JobStore) -> None:
    """Run the conversion pipeline for a stored job.

    WHY: This is the background task behind POST /conversions. It runs
    in FastAPI's worker thread pool, so the synchronous pipeline does not
    block the event loop.

    HOW: Builds ConversionOptions from the job, forwards every progress
    event into the store, writes result.json into the job directory, and
    records the outcome.

    RULES:
    - ConversionError of kind cancelled → CANCELLED, other kinds → FAILED
    - Any other exception is logged and recorded as an unknown error
    - A job deleted mid-run is simply dropped (store updates return None)
    """
    job = store.get_job(job_id)
    if job is None:
        return

    options = ConversionOptions(host_tier=HostTier.INTERACTIVE, **job.options)

    def on_progress(event: ProgressEvent) -> None:
        store.update_job(job_id, status=JobStatus.RUNNING, progress=event.to_dict())

    store.update_job(job_id, status=JobStatus.RUNNING)
    pipeline = ConversionPipeline(options, on_progress=on_progress, cancel_token=job.cancel_token)

    try:
        result = pipeline.convert(job.input_path)
        (job.work_dir / RESULT_FILENAME).write_text(result.to_json(), encoding="utf-8")
    except ConversionError as exc:
        status = JobStatus.CANCELLED if exc.kind == ErrorKind.CANCELLED else JobStatus.FAILED
        store.update_job(job_id, status=status, error=exc.to_dict())
        return
    except Exception as exc:
        logger.exception("Conversion job %s failed", job_id)
        error = ConversionError(ErrorKind.UNKNOWN, str(exc), stage=pipeline.stage.value)
        store.update_job(job_id, status=JobStatus.FAILED, error=error.to_dict())
        return

    store.update_job(
        job_id,
        status=JobStatus.COMPLETED,
        result_file=RESULT_FILENAME,
        download_name=download_filename(result.decks, source_filename=job.filename),
    )


# ---------------------------------------------------------------------------
# Endpoints: Conversions
# ---------------------------------------------------------------------------


@app.post(
    "/conversions",
    response_model=JobCreatedResponse,
    status_code=201,
    tags=["conversions"],
    summary="Submit a conversion job",
    description=(
        "Upload an Anki package, collection database or tab-separated file. "
        "Returns a job ID immediately; the conversion runs in the background. "
        "Poll GET /conversions/{id} for progress."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported file type or option"},
        413: {"model": ErrorResponse, "description": "Upload exceeds the size limit"},
        429: {"model": ErrorResponse, "description": "Too many concurrent jobs"},
    },
)
async def create_conversion(
    background_tasks: BackgroundTasks,
    file: Annotated[
        UploadFile,
        File(description="Anki export to convert (.apkg, .colpkg, .anki2, .anki21, "
                         ".db, .sqlite, .sqlite3, .tsv, .txt)."),
    ],
    include_stats: Annotated[
        bool,
        Form(description="Add scheduling statistics to every card."),
    ] = False,
    include_suspended: Annotated[
        bool,
        Form(description="Include suspended cards, marked with \"suspended\": true."),
    ] = False,
    preserve_formatting: Annotated[
        bool,
        Form(description="Convert bold/italic/etc. to lightweight text markers."),
    ] = True,
    format: Annotated[
        str,
        Form(description="Input format, or 'auto' to detect it."),
    ] = "auto",
) -> JobCreatedResponse:
    # Strip directories to prevent path traversal
    filename = Path(file.filename or "upload").name
    if format == "auto":
        _validate_file_extension(filename)
    elif format not in FORMAT_DESCRIPTIONS:
        raise HTTPException(
            status_code=400,
            detail="Unknown format '{}'. Available: auto, {}".format(
                format, ", ".join(FORMAT_DESCRIPTIONS)
            ),
        )

    options = {
        "include_stats": include_stats,
        "include_suspended": include_suspended,
        "preserve_formatting": preserve_formatting,
        "force_format": None if format == "auto" else format,
    }

    try:
        job = job_store.create_job(filename=filename, options=options)
    except ValueError as exc:
        raise HTTPException(status_code=429, detail=str(exc))

    try:
        size = await _save_upload(file, job)
    except Exception:
        # no background task owns the job yet
        job_store.delete_job(job.id)
        raise
    logger.info("Stored %d byte upload for job %s", size, job.id)

    background_tasks.add_task(_run_conversion_job, job.id, job_store)

    return JobCreatedResponse(
        id=job.id,
        status=job.status.value,
        filename=job.filename,
    )


@app.get(
    "/conversions/{job_id}",
    response_model=JobResponse,
    tags=["conversions"],
    summary="Get conversion job status",
    description=(
        "Poll this endpoint to track a conversion. Returns the status, the "
        "latest progress event, and structured error details on failure."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
    },
)
async def get_conversion(job_id: str) -> JobResponse:
    return _job_to_response(_get_job_or_404(job_id))


@app.get(
    "/conversions/{job_id}/result",
    tags=["conversions"],
    summary="Download the JSON result",
    description=(
        "Download the converted JSON document of a completed job, with a "
        "file name derived from the deck or the uploaded file."
    ),
    responses={
        200: {"content": {"application/json": {}}, "description": "The JSON document"},
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job not yet completed"},
    },
)
async def download_conversion_result(job_id: str) -> Response:
    job = _get_job_or_404(job_id)

    if job.status != JobStatus.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail="Job is not completed (current status: {}).".format(job.status.value),
        )

    path = job.result_path
    if path is None or not path.exists():
        raise HTTPException(status_code=404, detail="Result for job {} not found on disk.".format(job_id))

    return Response(
        content=path.read_bytes(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="{}"'.format(
            job.download_name or RESULT_FILENAME)},
    )


@app.delete(
    "/conversions/{job_id}",
    status_code=204,
    tags=["conversions"],
    summary="Cancel and delete a conversion job",
    description=(
        "Cancel a running conversion (if any) and delete the job with its "
        "upload and result. Also used to clean up after downloading."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
    },
)
async def delete_conversion(job_id: str) -> Response:
    deleted = job_store.delete_job(job_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: Formats
# ---------------------------------------------------------------------------


@app.get(
    "/formats",
    response_model=List[FormatInfo],
    tags=["formats"],
    summary="List accepted input formats",
    description="Returns every accepted input format with its file extensions.",
)
async def list_formats() -> List[FormatInfo]:
    return [
        FormatInfo(
            key=key,
            description=description,
            extensions=sorted(ext for ext, fmt in EXTENSION_FORMATS.items() if fmt == key),
        )
        for key, description in FORMAT_DESCRIPTIONS.items()
    ]


# ---------------------------------------------------------------------------
# Endpoints: Health
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness and readiness check for load balancers and orchestrators.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


def run_api():
    """Entry point for the anki-converter-api console script."""
    import uvicorn
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
