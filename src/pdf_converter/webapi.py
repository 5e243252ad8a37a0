import asyncio
import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

from fastapi import Depends, FastAPI, File, HTTPException, Request, Security, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, PlainTextResponse
from fastapi.security import APIKeyHeader
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Receive, Scope, Send

from .config import ServerOptions, Settings
from .conversion import ConversionService, PipelineError
from .conversion.adapters import LibreOfficeConverter, LocalStorage, PypdfPadder
from .conversion.interfaces import ConverterGateway, PdfTransformGateway, RetentionPolicy, StorageGateway

logger = logging.getLogger(__name__)

_TEXT_ERROR = {"content": {"text/plain": {"schema": {"type": "string"}}}}


class CleanupFileResponse(FileResponse):
    """FileResponse that runs `on_close(sent)` after sending, whether or not sending succeeded."""

    def __init__(self, *args, on_close: Callable[[bool], None], **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sent = False
        try:
            await super().__call__(scope, receive, send)
            sent = True
        except Exception:
            logger.exception("Failed to write PDF to response")
            raise
        finally:
            await run_in_threadpool(self._on_close, sent)


def create_app(
    settings: Settings | None = None,
    *,
    storage: StorageGateway | None = None,
    converter: ConverterGateway | None = None,
    padder: PdfTransformGateway | None = None,
) -> FastAPI:
    """Build the FastAPI application around one ConversionService.

    Gateways default to the local adapters; tests inject fakes.
    """
    settings = settings or Settings.from_env()
    if storage is None:
        storage = LocalStorage(
            RetentionPolicy(root=settings.work_dir, max_age=settings.retention),
            default_extension=settings.default_extension,
        )
    if converter is None:
        converter = LibreOfficeConverter(
            settings.soffice_bin,
            render_margin=settings.render_margin,
            timeout_sec=settings.conversion_timeout_sec,
        )
    service = ConversionService(
        storage=storage,
        converter=converter,
        padder=padder or PypdfPadder(),
        margin_mm=settings.margin_mm,
        sweep_interval_sec=settings.sweep_interval_sec,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Ensure base directory and start the retention sweep
        settings.work_dir.mkdir(parents=True, exist_ok=True)
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="PDF Converter API",
        version=settings.version,
        description="API for converting office documents (.xlsx, .xls, .docx, ...) to padded PDF documents using LibreOffice",
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    api_key_header = APIKeyHeader(name=settings.auth_header, auto_error=False, scheme_name="ApiTokenAuth")

    def require_token(token: str | None = Security(api_key_header)) -> None:
        if not token or not hmac.compare_digest(token.encode("utf-8"), settings.api_token.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> PlainTextResponse:
        # the only validated input is the multipart `file` field
        logger.info("Rejected upload on %s: %s", request.url.path, exc.errors())
        return PlainTextResponse("Failed to read uploaded file", status_code=400)

    @app.exception_handler(PipelineError)
    async def _pipeline_error(request: Request, exc: PipelineError) -> PlainTextResponse:
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
            "service": settings.service_name,
            "version": settings.version,
        }

    app.get("/", summary="Health check", operation_id="healthCheck")(health)
    app.get("/health", summary="Health check endpoint", operation_id="health")(health)

    @app.post(
        "/convert",
        summary="Convert document to PDF",
        operation_id="convertToPdf",
        response_class=FileResponse,
        dependencies=[Depends(require_token)],
        responses={
            200: {"content": {"application/pdf": {"schema": {"type": "string", "format": "binary"}}}},
            400: {"description": "Bad request - invalid file or missing file", **_TEXT_ERROR},
            401: {"description": "Missing or invalid auth token", **_TEXT_ERROR},
            405: {"description": "Method not allowed", **_TEXT_ERROR},
            500: {"description": "Internal server error - conversion failed", **_TEXT_ERROR},
        },
    )
    async def convert(
        file: UploadFile | None = File(None, description="Office document, e.g. an Excel workbook (.xlsx or .xls)"),
    ) -> CleanupFileResponse:
        """Upload a document and convert it to PDF using LibreOffice.

        Each spreadsheet sheet is rendered on a single page where the converter
        allows it, and every page gets a uniform margin.
        """
        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="Failed to read uploaded file")

        try:
            result = await asyncio.to_thread(service.convert_upload, file.file, file.filename)
        finally:
            await file.close()

        return CleanupFileResponse(
            result.pdf_path,
            media_type="application/pdf",
            filename="output.pdf",
            on_close=lambda sent: service.cleanup(result, streamed=sent),
        )

    return app


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:5000). Set HOST/PORT env vars to override.
    """
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    options = ServerOptions.from_env()
    uvicorn.run(
        "pdf_converter.webapi:create_app",
        factory=True,
        host=options.host,
        port=options.port,
        reload=options.reload,
    )


if __name__ == "__main__":
    run()
