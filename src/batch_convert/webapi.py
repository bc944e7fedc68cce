from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import quote

from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.background import BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from . import __version__
from .config import Settings
from .conversion import (
    ArchiveError,
    BatchConversionService,
    BatchFailedError,
    ConfigurationError,
    ConversionError,
    StorageError,
    Upload,
    ValidationError,
)
from .conversion.adapters import CloudConvertClient, LocalScratchStorage, ZipArchiver
from .conversion.interfaces import ArchiveGateway, ConverterGateway, StorageGateway
from .logging_config import configure_logging

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Translate pipeline errors into the `{status, message}` JSON payload."""

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error on {}: {}", request.url.path, exc.message)
        return _error(500, exc.message)

    @app.exception_handler(BatchFailedError)
    async def batch_failed_handler(request: Request, exc: BatchFailedError) -> JSONResponse:
        logger.warning("No output produced on {}: {}", request.url.path, exc.message)
        return _error(422, exc.message)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.warning("Rejected request on {}: {}", request.url.path, exc.message)
        return _error(400, exc.message)

    @app.exception_handler(StorageError)
    async def storage_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Scratch storage failure on {}: {}", request.url.path, exc.message)
        return _error(500, exc.message)

    @app.exception_handler(ArchiveError)
    async def archive_handler(request: Request, exc: ArchiveError) -> JSONResponse:
        logger.error("Archive failure on {}: {}", request.url.path, exc.message)
        return _error(500, exc.message)

    @app.exception_handler(ConversionError)
    async def conversion_handler(request: Request, exc: ConversionError) -> JSONResponse:
        logger.error("Conversion failure on {}: {}", request.url.path, exc.message)
        return _error(500, exc.message)

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on {} {}", request.method, request.url.path)
        return _error(500, "Internal Server Error")


@router.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@router.post("/convert")
async def convert(
    request: Request,
    files: list[UploadFile] | None = File(None),
    format: str | None = Form(None),
) -> StreamingResponse:
    """Convert every uploaded file to `format` and stream back one zip.

    Accepts multipart/form-data with 1..MAX_FILES parts named "files" and a
    "format" field (pdf, jpg, png, webp or docx; defaults to pdf). Files that
    fail remotely are left out of the archive and listed in X-Failed-Files.
    """
    service: BatchConversionService = request.app.state.service
    files = files or []

    # Reject before reading any upload body.
    service.validate_request(len(files), format)

    uploads = [Upload(filename=f.filename or "upload", data=await f.read()) for f in files]
    batch = await service.convert_batch(uploads, format)

    result = batch.result
    headers = {
        "Content-Disposition": f'attachment; filename="{batch.download_name}"',
        "X-Batch-Id": batch.batch_id,
        "X-Converted-Count": str(len(result.succeeded)),
        "X-Failed-Count": str(len(result.failed)),
    }
    if result.failed:
        headers["X-Failed-Files"] = ",".join(quote(src.filename, safe="") for src, _ in result.failed)

    # Covers clients that disconnect before the body is consumed; release is idempotent.
    cleanup = BackgroundTasks()
    cleanup.add_task(service.release, batch)
    return StreamingResponse(
        service.stream(batch),
        media_type="application/zip",
        headers=headers,
        background=cleanup,
    )


def create_app(
    settings: Settings | None = None,
    *,
    converter: ConverterGateway | None = None,
    storage: StorageGateway | None = None,
    archiver: ArchiveGateway | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    service = BatchConversionService(
        storage=storage or LocalScratchStorage(settings),
        converter=converter or CloudConvertClient(settings),
        archiver=archiver or ZipArchiver(),
        max_files=settings.max_files,
        workers=settings.convert_workers,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings)
        for d in (settings.uploads_dir, settings.output_dir):
            d.mkdir(parents=True, exist_ok=True)
        if not settings.has_credentials:
            logger.error("CLOUDCONVERT_API_KEY not set; every conversion request will fail")
        logger.info("Batch conversion service ready: {!r}", settings)
        yield
        logger.info("Batch conversion service shutting down")

    app = FastAPI(
        title="Batch Conversion Service",
        version=__version__,
        description=(
            "Converts a batch of uploaded files through CloudConvert and returns "
            "the results as a single zip archive."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "X-Batch-Id", "X-Converted-Count", "X-Failed-Count", "X-Failed-Files"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:5000). Set PORT env var to override.
    """
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("batch_convert.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
