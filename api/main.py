from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio, json, os, uuid
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tender_analysis.analysis import DocumentAnalyzer
from tender_analysis.config import config
from tender_analysis.errors import (
    ConfigurationError, ExtractionFailure, QueueFull, TenderAnalysisError, UnsupportedFormat,
)
from tender_analysis.ingestion import extract_text, resolve_media_type
from tender_analysis.jobs import JobQueue, JobStatus

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
OUTPUT_DIR = Path(config.output_dir)

_STATUS_CODES = {
    UnsupportedFormat: 415,
    QueueFull: 503,
    ConfigurationError: 503,
    ExtractionFailure: 422,
}


def create_app(queue_factory=None) -> FastAPI:
    """
    `queue_factory` builds the JobQueue inside the app's event loop
    (tests pass one wired to a fake backend).
    """
    queue_factory = queue_factory or (lambda: JobQueue(output_dir=str(OUTPUT_DIR)))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        queue = queue_factory()
        app.state.queue = queue
        await queue.start()
        try:
            yield
        finally:
            await queue.stop()

    app = FastAPI(title="Tender analysis", lifespan=lifespan)
    app.add_middleware(CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(TenderAnalysisError)
    async def analysis_error(request: Request, exc: TenderAnalysisError):
        status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
        return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})

    def _queue(request: Request) -> JobQueue:
        return request.app.state.queue

    def _job_or_404(request: Request, job_id: str):
        job = _queue(request).get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job

    async def _save_upload(document: UploadFile, job_id: str) -> Path:
        content = await document.read()
        limit_mb = config.max_file_size_mb
        if limit_mb > 0 and len(content) > limit_mb * 1024 * 1024:
            raise HTTPException(status_code=413, detail=f"File too large. Max: {limit_mb} MB")
        suffix = Path(document.filename or "").suffix.lower()
        path = UPLOAD_DIR / f"{job_id}{suffix}"
        path.write_bytes(content)
        return path

    @app.get("/status")
    def status(request: Request):
        queue = _queue(request)
        llm = config.llm
        return {
            "status": "ok",
            "backend": llm.backend,
            "backend_configured": bool(llm.api_key) if llm.backend == "openai" else bool(llm.model_path),
            "model": llm.model,
            "notion_configured": config.notion.enabled,
            "workers_running": queue.running,
            "jobs": len(queue.list_jobs()),
        }

    @app.post("/upload")
    async def upload(request: Request, document: UploadFile = File(...), full_text: bool = Form(False)):
        file_name = document.filename or "document"
        media_type = resolve_media_type(file_name, document.content_type)
        job_id = uuid.uuid4().hex[:8]
        path = await _save_upload(document, job_id)
        try:
            job = _queue(request).submit(str(path), file_name, media_type, full_text=full_text, job_id=job_id)
        except QueueFull:
            path.unlink(missing_ok=True)
            raise
        return {"job_id": job.id, "filename": file_name, "mode": "full_text" if full_text else "auto"}

    @app.post("/preview")
    async def preview(request: Request, document: UploadFile = File(...), full_text: bool = Form(False)):
        file_name = document.filename or "document"
        media_type = resolve_media_type(file_name, document.content_type)
        path = await _save_upload(document, f"preview-{uuid.uuid4().hex[:8]}")
        try:
            doc = await asyncio.to_thread(extract_text, str(path), media_type, file_name)
        finally:
            path.unlink(missing_ok=True)
        analyzer: DocumentAnalyzer = _queue(request).analyzer
        return {
            "filename": file_name,
            "chars": len(doc.text),
            "messages": analyzer.preview_messages(doc.text, full_text=full_text),
        }

    @app.get("/jobs")
    def list_jobs(request: Request):
        return [job.to_dict() for job in _queue(request).list_jobs()]

    @app.get("/jobs/{job_id}/status")
    def get_status(request: Request, job_id: str):
        return _job_or_404(request, job_id).to_dict()

    @app.get("/jobs/{job_id}/result")
    def get_result(request: Request, job_id: str):
        job = _job_or_404(request, job_id)
        if job.status != JobStatus.DONE or not job.result_path:
            raise HTTPException(status_code=409, detail=job.error or f"Job is {job.status.value}")
        return json.loads(Path(job.result_path).read_text(encoding="utf-8"))

    @app.delete("/jobs/{job_id}")
    def delete_job(request: Request, job_id: str):
        job = _job_or_404(request, job_id)
        _queue(request).remove(job_id)
        Path(job.file_path).unlink(missing_ok=True)
        return {"deleted": job_id}

    @app.get("/analyses")
    def list_analyses(request: Request):
        out_dir = _queue(request).output_dir
        files = sorted(out_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        analyses = []
        for path in files:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            analyses.append({
                "job_id": data.get("job_id", path.stem),
                "file_name": data.get("file_name"),
                "mode": data.get("mode"),
                "modified": datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat(),
            })
        return analyses

    return app


app = create_app()
