"""
jobs.py — Background analysis + publishing queue.

Uploads used to kick off a thread and hope for the best; a failed Notion
publish only ever showed up in the server log. Now every upload is a Job
on a bounded asyncio.Queue drained by a few worker tasks, and everything
that happens to it (attempt counts, errors, the page URL) is recorded on
the Job where the status endpoints can see it.

    submit() ──> queue ──> worker: extract text -> analyze (once)
                                 -> write outputs/<job_id>.json
                                 -> publish (retried, fixed delay)

The uploaded file is deleted once its job finishes either way, and only
the newest `history_size` finished jobs are remembered.

A job whose analysis succeeded but whose publish kept failing ends up
status=done with publish_status=failed; the analysis is still on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tender_analysis.analysis import DocumentAnalyzer
from tender_analysis.config import Config, config
from tender_analysis.errors import PublishError, QueueFull, TenderAnalysisError
from tender_analysis.ingestion import document_type_label, extract_text
from tender_analysis.notion import NotionPublisher
from tender_analysis.schemas import REQUIREMENT_GROUPS, AnalysisResult, Document

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class PublishStatus(str, Enum):
    SKIPPED = "skipped"
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Job:
    id: str
    file_name: str
    file_path: str
    media_type: Optional[str] = None
    full_text: bool = False
    status: JobStatus = JobStatus.QUEUED
    message: str = "Queued"
    analysis_attempts: int = 0
    publish_attempts: int = 0
    error: Optional[str] = None
    result_path: Optional[str] = None
    publish_status: PublishStatus = PublishStatus.PENDING
    publish_error: Optional[str] = None
    page_url: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def update(self, **changes) -> None:
        for key, value in changes.items():
            setattr(self, key, value)
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["publish_status"] = self.publish_status.value
        data.pop("file_path")
        return data


class JobQueue:
    """
    Usage:
        queue = JobQueue()
        await queue.start()
        job = queue.submit("uploads/ab12.pdf", "tender.pdf")
        ...
        await queue.stop()

    `analyzer`, `publisher`, `extract` and `sleep` are injectable for tests.
    Pass publisher=None to use the configured Notion publisher (skipped
    entirely when Notion isn't configured).
    """

    def __init__(
        self,
        analyzer: Optional[DocumentAnalyzer] = None,
        publisher: Optional[NotionPublisher] = None,
        settings: Optional[Config] = None,
        extract: Callable[..., Document] = extract_text,
        sleep: Sleep = asyncio.sleep,
        output_dir: Optional[str] = None,
    ):
        self.settings = settings or config
        self._analyzer = analyzer
        self.publisher = publisher
        if publisher is None and self.settings.notion.enabled:
            self.publisher = NotionPublisher(self.settings.notion)
        self._extract = extract
        self._sleep = sleep
        self.output_dir = Path(output_dir or self.settings.output_dir)

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.queue.max_size)
        self._jobs: Dict[str, Job] = {}
        self._workers: List[asyncio.Task] = []

    @property
    def analyzer(self) -> DocumentAnalyzer:
        # Built lazily so the API can start without an API key configured.
        if self._analyzer is None:
            self._analyzer = DocumentAnalyzer(settings=self.settings)
        return self._analyzer

    # ── lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._workers:
            return
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for n in range(self.settings.queue.workers):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"job-worker-{n}"))
        logger.info("Job queue started with %d workers", len(self._workers))

    async def stop(self) -> None:
        """Cancel the workers. Jobs they were running are marked as errors."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self.publisher is not None:
            await self.publisher.aclose()
        logger.info("Job queue stopped")

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── jobs ──────────────────────────────────────────────────────────

    def submit(
        self,
        file_path: str,
        file_name: str,
        media_type: Optional[str] = None,
        full_text: bool = False,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Raises:
            QueueFull: max_size jobs are already waiting.
        """
        job = Job(
            id=job_id or uuid.uuid4().hex[:8],
            file_name=file_name,
            file_path=file_path,
            media_type=media_type,
            full_text=full_text,
        )
        if self.publisher is None:
            job.publish_status = PublishStatus.SKIPPED
        try:
            self._queue.put_nowait(job.id)
        except asyncio.QueueFull as exc:
            raise QueueFull(
                f"{self._queue.qsize()} jobs already waiting; try again later"
            ) from exc
        self._jobs[job.id] = job
        logger.info("Queued job %s for %s", job.id, file_name)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def remove(self, job_id: str) -> bool:
        """Forget a job. A queued job that was removed is skipped by the workers."""
        return self._jobs.pop(job_id, None) is not None

    # ── workers ───────────────────────────────────────────────────────

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._queue.get()
            job = self._jobs.get(job_id)
            try:
                if job is None:
                    continue
                await self._process(job)
            except asyncio.CancelledError:
                if job is not None:
                    job.update(status=JobStatus.ERROR, message="Cancelled", error="cancelled")
                raise
            except (TenderAnalysisError, OSError) as exc:
                logger.error("Job %s failed: %s", job_id, exc)
                job.update(status=JobStatus.ERROR, message="Failed", error=str(exc))
            except Exception as exc:
                logger.exception("Job %s crashed: %s", job_id, exc)
                job.update(status=JobStatus.ERROR, message="Failed", error=f"{type(exc).__name__}: {exc}")
            finally:
                if job is not None:
                    _discard_upload(job)
                    self._prune_history()
                self._queue.task_done()

    def _prune_history(self) -> None:
        finished = [
            job for job in self._jobs.values()
            if job.status in (JobStatus.DONE, JobStatus.ERROR)
        ]
        for job in finished[: max(0, len(finished) - self.settings.queue.history_size)]:
            del self._jobs[job.id]

    async def _process(self, job: Job) -> None:
        job.update(status=JobStatus.RUNNING, message="Extracting text...")
        # OCR and PDF parsing block; keep them off the event loop.
        document = await asyncio.to_thread(
            self._extract, job.file_path, job.media_type, job.file_name
        )

        job.update(message="Analyzing...", analysis_attempts=job.analysis_attempts + 1)
        if job.full_text:
            result = await self.analyzer.analyze_full(document.text, job.file_name)
        else:
            result = await self.analyzer.analyze(document.text, job.file_name)

        job.update(result_path=str(self._save(job, result)))

        if self.publisher is not None:
            job.update(message="Publishing...")
            await self._publish(job, result, document_type_label(document.media_type))

        job.update(status=JobStatus.DONE, message=_done_message(job, result))
        logger.info("Job %s done: %s", job.id, job.message)

    def _save(self, job: Job, result: AnalysisResult) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{job.id}.json"
        payload = {"job_id": job.id, "file_name": job.file_name, **result.to_payload()}
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        return path

    async def _publish(self, job: Job, result: AnalysisResult, document_type: str) -> None:
        attempts = self.settings.queue.publish_attempts
        delay = self.settings.queue.publish_retry_delay

        for attempt in range(1, attempts + 1):
            job.update(publish_attempts=attempt)
            try:
                page = await self.publisher.publish(
                    result.record,
                    file_name=job.file_name,
                    document_type=document_type,
                    file_key=job.id,
                )
            except PublishError as exc:
                job.update(publish_error=str(exc))
                if attempt < attempts:
                    logger.warning(
                        "Publish of job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        job.id, attempt, attempts, delay, exc,
                    )
                    await self._sleep(delay)
                    continue
                logger.error("Publish of job %s failed after %d attempts: %s", job.id, attempts, exc)
                job.update(publish_status=PublishStatus.FAILED)
                return

            job.update(publish_status=PublishStatus.PUBLISHED, page_url=page.url, publish_error=None)
            logger.info("Job %s published to %s", job.id, page.url)
            return


def _discard_upload(job: Job) -> None:
    # The saved result is the record of the job; the upload isn't needed.
    try:
        Path(job.file_path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove upload %s for job %s: %s", job.file_path, job.id, exc)


def _done_message(job: Job, result: AnalysisResult) -> str:
    record = result.record
    reqs = sum(len(getattr(record, name)) for name, _ in REQUIREMENT_GROUPS)
    msg = f"Complete — {reqs} requirements, {len(record.required_documents)} document types"
    if result.failed_windows:
        msg += f" ({len(result.failed_windows)}/{result.windows_total} windows failed)"
    if job.publish_status == PublishStatus.FAILED:
        msg += "; publishing failed"
    return msg
