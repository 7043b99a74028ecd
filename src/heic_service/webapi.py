import asyncio
import os
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse

from heic_service.conversion import (
    ConversionService,
    ConversionServiceError,
    TargetFormat,
    ValidationError,
    is_source_name,
)
from heic_service.conversion.adapters import LocalStorage, PillowHeifConverter
from heic_service.logger import get_logger

app = FastAPI(
    title="HEIC Conversion Service",
    version=os.getenv("HEIC_SERVICE_VERSION", "0.1.0"),
    description="Upload HEIC/HEIF images, convert them to JPEG or PNG, and download the results.",
)

log = get_logger("webapi")

# Global configuration defaults
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", str(DATA_DIR / "uploads"))).resolve()
CONVERTED_DIR = Path(os.getenv("CONVERTED_DIR", str(DATA_DIR / "converted"))).resolve()
WORKERS = int(os.getenv("WORKERS", "4"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "90"))

SERVICE: ConversionService | None = None

_HTTP_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
}


def build_service(uploads_dir: Path, converted_dir: Path) -> ConversionService:
    storage = LocalStorage(str(uploads_dir), str(converted_dir))
    storage.ensure_directories()
    storage.remove_stale_partials()
    converter = PillowHeifConverter(jpeg_quality=JPEG_QUALITY)
    return ConversionService(storage=storage, converter=converter, workers=WORKERS)


def get_service() -> ConversionService:
    if SERVICE is None:
        raise RuntimeError("conversion service not started")
    return SERVICE


@app.on_event("startup")
async def _startup() -> None:
    global SERVICE
    SERVICE = await asyncio.to_thread(build_service, UPLOADS_DIR, CONVERTED_DIR)
    log.info("serving uploads=%s converted=%s workers=%d", UPLOADS_DIR, CONVERTED_DIR, WORKERS)


@app.exception_handler(ConversionServiceError)
async def _service_error(request: Request, exc: ConversionServiceError) -> JSONResponse:
    code = _HTTP_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content={"status": "error", **exc.to_dict()})


def _error(code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=code, content={"status": "error", "code": error_code, "message": message})


def _converted_body(original: str, converted: str, locator: str) -> dict[str, str]:
    return {
        "status": "success",
        "message": "File converted successfully",
        "originalFile": original,
        "convertedFile": converted,
        "downloadUrl": locator,
    }


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/upload")
async def upload(
    file: UploadFile | None = File(None, alias="heicFile"),
    format: str | None = Form(None),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Persist one HEIC upload and convert it immediately.

    Accepts multipart/form-data with a file part named "heicFile" and an
    optional "format" field (jpeg or png, default jpeg). Extension and format
    are validated before anything touches the disk.
    """
    if file is None or not file.filename:
        return _error(status.HTTP_400_BAD_REQUEST, "validation_error", "No file uploaded")

    name = os.path.basename(file.filename)
    if not is_source_name(name):
        raise ValidationError("Only HEIC files are allowed!")
    fmt = TargetFormat.parse(format)

    chunks: list[bytes] = []
    size_bytes = 0
    max_bytes = MAX_UPLOAD_MB * 1024 * 1024
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        size_bytes += len(chunk)
        if size_bytes > max_bytes:
            return _error(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                "payload_too_large",
                f"upload exceeds {MAX_UPLOAD_MB} MB",
            )
        chunks.append(chunk)

    source = await service.persist_upload(name, b"".join(chunks))
    artifact = await service.convert_one(source, fmt)
    return JSONResponse(content=_converted_body(source.name, artifact.name, artifact.locator))


@app.post("/convert/{name}")
async def convert_uploaded(
    name: str,
    format: str | None = None,
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Convert (or re-convert) a file already sitting in the uploads folder."""
    artifact = await service.convert_source(name, format)
    return JSONResponse(content=_converted_body(name, artifact.name, artifact.locator))


@app.get("/convert-all")
async def convert_all(format: str | None = None, service: ConversionService = Depends(get_service)) -> dict[str, Any]:
    fmt = TargetFormat.PNG if format == "png" else TargetFormat.JPEG
    result = await service.convert_all(fmt)
    return {"status": "success", "format": fmt.value, "result": result.to_dict()}


@app.get("/converted-files")
async def converted_files(service: ConversionService = Depends(get_service)) -> dict[str, Any]:
    entries = await asyncio.to_thread(service.catalog.list_artifacts)
    return {"files": [e.to_dict() for e in entries]}


@app.get("/converted/{name}")
async def download(name: str, service: ConversionService = Depends(get_service)) -> FileResponse:
    path = await asyncio.to_thread(service.catalog.locate, name)
    return FileResponse(path, filename=name)


@app.delete("/converted/{name}")
async def delete_converted(name: str, service: ConversionService = Depends(get_service)) -> dict[str, str]:
    await service.remove_artifact(name)
    return {"status": "success"}


@app.delete("/uploads/{name}")
async def delete_upload(name: str, service: ConversionService = Depends(get_service)) -> dict[str, str]:
    await service.remove_source(name)
    return {"status": "success"}


@app.delete("/clear")
async def clear(service: ConversionService = Depends(get_service)) -> dict[str, Any]:
    result = await service.clear()
    return {"status": "success", "message": "All files cleared", "removed": result.removed}


@app.get("/jobs")
def list_jobs(service: ConversionService = Depends(get_service)) -> dict[str, Any]:
    return {"jobs": [j.to_dict() for j in service.jobs()]}


@app.get("/jobs/{job_id}")
def get_job(job_id: str, service: ConversionService = Depends(get_service)) -> dict[str, Any]:
    return service.job(job_id).to_dict()


@app.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, service: ConversionService = Depends(get_service)) -> JSONResponse:
    """Re-run a failed job against the upload already on disk."""
    failed = service.job(job_id)
    artifact = await service.retry(job_id)
    return JSONResponse(content=_converted_body(failed.source.name, artifact.name, artifact.locator))


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:5000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "5000"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("heic_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
