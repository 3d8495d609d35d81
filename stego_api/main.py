import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, UploadFile, File, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from .config import Settings
from .errors import EngineFailure, NotFound, StegoError
from .jobs import JobRegistry, redis_client
from .models import Job, JobResponse, Operation
from .storage import ArtifactStore
from .uploads import UploadManager
from .worker import JobExecutor

logger = logging.getLogger(__name__)

# boundaries and part headers on top of the file bytes themselves
MULTIPART_OVERHEAD = 64 * 1024

SUCCESS_MESSAGES = {
    "encode": "File encoded successfully",
    "decode": "File decoded successfully",
}
FAILURE_PREFIXES = {
    "encode": "Encoding failed",
    "decode": "Decoding failed",
}


def _download_url(filename: str) -> str:
    return f"/api/download/{filename}"


class UploadLimitMiddleware:
    """Rejects request bodies over the limit while they are still arriving.

    Chunked uploads carry no Content-Length, so the bytes are counted as
    the app receives them and the request fails before the multipart parser
    spools more than the limit.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int, message: str):
        self.app = app
        self.max_body_bytes = max_body_bytes
        self.message = message

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length", "")
        if length.isdigit() and int(length) > self.max_body_bytes:
            response = JSONResponse(status_code=413, content={"success": False, "error": self.message})
            await response(scope, receive, send)
            return

        received = 0

        async def counting_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    # HTTPException passes through FastAPI's body parsing untouched
                    raise HTTPException(status_code=413, detail=self.message)
            return message

        await self.app(scope, counting_receive, send)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    store = ArtifactStore(settings.staging_dir, settings.output_dir)
    registry = JobRegistry(
        max_jobs=settings.max_jobs,
        rdb=redis_client(settings.redis_url) if settings.redis_url else None,
    )
    uploads = UploadManager(store, settings.max_upload_bytes, settings.verify_carrier)
    executor = JobExecutor(
        settings.engine_path,
        store,
        registry,
        engine_args=settings.engine_args,
        timeout_sec=settings.job_timeout_sec,
        max_concurrent=settings.max_concurrent_jobs,
        max_error_chars=settings.max_error_chars,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        store.ensure_directories()
        if settings.output_ttl_hours > 0:
            store.purge_outputs(settings.output_ttl_hours * 3600)
        logger.info(
            "Engine %s, staging %s, output %s", settings.engine_path, store.staging_dir, store.output_dir
        )
        yield
        registry.close()

    app = FastAPI(title="Stego API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.executor = executor

    @app.exception_handler(StegoError)
    async def stego_error(request: Request, exc: StegoError):
        if isinstance(exc, NotFound):
            return JSONResponse(status_code=404, content={"error": exc.message})
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 413:
            return JSONResponse(status_code=413, content={"success": False, "error": exc.detail})
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request"})

    @app.exception_handler(Exception)
    async def server_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        # OSError text carries the offending path; its strerror does not
        if isinstance(exc, OSError) and exc.strerror:
            detail = exc.strerror
        else:
            detail = executor.sanitize(str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": f"Server error: {detail}"})

    limit_mb = settings.max_upload_bytes / (1024 * 1024)
    app.add_middleware(
        UploadLimitMiddleware,
        max_body_bytes=settings.max_upload_bytes + MULTIPART_OVERHEAD,
        message=f"Upload exceeds the {limit_mb:g}MB limit",
    )

    async def _process(operation: Operation, staged: List[Path]) -> JobResponse:
        try:
            job = registry.create(operation, staged, store.new_output_path(operation))
        except BaseException:
            store.discard(staged)
            raise

        try:
            job = await executor.run(job)
        except EngineFailure as exc:
            raise EngineFailure(f"{FAILURE_PREFIXES[operation]}: {exc.message}", exc.diagnostics) from exc

        filename = os.path.basename(job.output_path)
        return JobResponse(
            message=SUCCESS_MESSAGES[operation],
            outputFile=_download_url(filename),
            filename=filename,
            jobId=job.job_id,
        )

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/api/encode", response_model=JobResponse)
    async def encode(
        coverImage: Optional[UploadFile] = File(None),
        secretFile: Optional[UploadFile] = File(None),
    ):
        staged = await uploads.stage_encode(coverImage, secretFile)
        return await _process("encode", staged)

    @app.post("/api/decode", response_model=JobResponse)
    async def decode(stegoImage: Optional[UploadFile] = File(None)):
        staged = await uploads.stage_decode(stegoImage)
        return await _process("decode", staged)

    # ":path" so traversal attempts reach the resolver instead of the router
    @app.get("/api/download/{filename:path}")
    def download(filename: str):
        p = store.resolve_output(filename)
        return FileResponse(str(p), filename=p.name)

    @app.get("/api/jobs/{job_id}", response_model=Job)
    def get_job(job_id: str):
        job = registry.get(job_id)
        if not job:
            raise NotFound("Job not found")
        return job

    return app


app = create_app()
