"""
analysis.py — Whole-document and map-reduce analysis of tender text.

    text ──< threshold──> one backend call ──> normalize ──> reduce_records ──> record
      │
      └──>= threshold──> split_text ──> one call per window (in order)
                          ──> normalize each ──> reduce_records
                          ──> optional finalization pass ──> record

A window that fails (retries exhausted, non-retryable error, garbage
output) is logged and skipped: on a 40-window tender losing one window
is better than losing the whole analysis. Only when EVERY window fails,
or the single whole-document call fails, does the caller get an
ExtractionFailure.

Window order is load-bearing. The reducer's "first scalar wins" and
"first duplicate wins" rules are only deterministic if partials arrive in
document order, so the concurrent path still hands them over in order.

Cancellation is all-or-nothing: CancelledError is never caught here, so
cancelling the task abandons in-flight calls and discards the partials.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from tender_analysis.backends import TextGenerationBackend, create_backend
from tender_analysis.config import Config, config
from tender_analysis.errors import BackendFailure, ExtractionFailure
from tender_analysis.extraction import ExtractionClient
from tender_analysis.knowledge_base import build_augmented_prompt
from tender_analysis.merge import reduce_records
from tender_analysis.normalizer import normalize_output
from tender_analysis.prompts import FINALIZE_SYSTEM_PROMPT, system_prompt_for, window_suffix_for
from tender_analysis.schemas import AnalysisResult, ExtractionRecord, Window
from tender_analysis.windowing import split_text

logger = logging.getLogger(__name__)


class DocumentAnalyzer:
    """
    Usage:
        analyzer = DocumentAnalyzer()
        result = await analyzer.analyze(text, "tender.pdf")
        print(result.canonical_json)
    """

    def __init__(
        self,
        backend: Optional[TextGenerationBackend] = None,
        settings: Optional[Config] = None,
        client: Optional[ExtractionClient] = None,
        kb_path: Optional[str] = None,
    ):
        self.settings = settings or config
        self._backend = backend
        self._client = client
        self.kb_path = kb_path

    @property
    def client(self) -> ExtractionClient:
        # Built on first call so previews work without backend credentials.
        if self._client is None:
            backend = self._backend or create_backend(self.settings.llm)
            self._client = ExtractionClient(backend, self.settings.llm)
        return self._client

    # ── prompts ───────────────────────────────────────────────────────

    def build_augmented_prompt(self, base_prompt: Optional[str] = None) -> str:
        """Exactly the system prompt a whole-document call would use."""
        if base_prompt is None:
            base_prompt = system_prompt_for(self.settings.pipeline.output_format)
        return build_augmented_prompt(base_prompt, self.kb_path or self.settings.knowledge_base.path)

    def _window_prompt(self, base: str) -> str:
        return f"{base}\n\n{window_suffix_for(self.settings.pipeline.output_format)}"

    def preview_messages(self, text: str, full_text: bool = False) -> List[Dict[str, str]]:
        """
        The system/user pair the first backend call would get. Nothing is
        sent. For windowed documents this is the first window.
        """
        prompt = self.build_augmented_prompt()
        if full_text or len(text) < self.settings.windowing.whole_document_threshold:
            return [
                {"role": "system", "content": prompt},
                {"role": "user", "content": text},
            ]
        windows = split_text(
            text, self.settings.windowing.window_size, self.settings.windowing.overlap
        )
        return [
            {"role": "system", "content": self._window_prompt(prompt)},
            {"role": "user", "content": windows[0].text},
        ]

    # ── entry points ──────────────────────────────────────────────────

    async def analyze(self, text: str, document_name: str) -> AnalysisResult:
        """Whole-document call for short text, windowed map-reduce otherwise."""
        _require_text(text, document_name)
        prompt = self.build_augmented_prompt()

        if len(text) < self.settings.windowing.whole_document_threshold:
            logger.info("Analyzing %s as a whole document (%d chars)", document_name, len(text))
            record = await self._single_call(prompt, text, document_name)
            return _result(document_name, "whole_document", record)

        windows = split_text(
            text, self.settings.windowing.window_size, self.settings.windowing.overlap
        )
        logger.info(
            "Analyzing %s in %d windows (%d chars, size=%d, overlap=%d, concurrency=%d)",
            document_name, len(windows), len(text), self.settings.windowing.window_size,
            self.settings.windowing.overlap, self.settings.pipeline.max_concurrency,
        )
        t0 = time.time()
        partials = await self._map_windows(self._window_prompt(prompt), windows, document_name)
        failed = [i for i, record in enumerate(partials) if record is None]

        if len(failed) == len(windows):
            raise ExtractionFailure(
                f"All {len(windows)} windows of {document_name} failed; nothing to merge"
            )
        if failed:
            logger.warning(
                "%s: %d/%d windows contributed nothing (indexes %s)",
                document_name, len(failed), len(windows), failed,
            )

        record = reduce_records(partials, self.settings.merge)
        logger.info("Map step for %s done in %.1fs", document_name, time.time() - t0)

        finalized = False
        if self.settings.pipeline.finalize:
            record, finalized = await self._finalize(record, document_name)

        return _result(
            document_name, "windowed", record,
            windows_total=len(windows), failed_windows=failed, finalized=finalized,
        )

    async def analyze_full(self, text: str, document_name: str) -> AnalysisResult:
        """
        One call with the whole text, no windowing, on the large-context
        model. Slower and pricier, but the model sees cross-references
        between distant sections.
        """
        _require_text(text, document_name)
        logger.info("Analyzing %s in full-text mode (%d chars)", document_name, len(text))
        record = await self._single_call(
            self.build_augmented_prompt(),
            text,
            document_name,
            model=self.settings.llm.full_text_model,
            temperature=self.settings.llm.full_text_temperature,
            max_tokens=0,
        )
        return _result(document_name, "full_text", record)

    async def finalize(self, merged: ExtractionRecord, document_name: str = "document") -> str:
        """
        Ask the backend to tidy the merged record. Returns canonical JSON
        text; on any failure that's just the merged record serialized.
        """
        record, _ = await self._finalize(merged, document_name)
        return record.to_json()

    # ── internals ─────────────────────────────────────────────────────

    async def _single_call(self, prompt: str, text: str, document_name: str, **overrides) -> ExtractionRecord:
        try:
            raw = await self.client.generate(prompt, text, label=document_name, **overrides)
        except BackendFailure as exc:
            raise ExtractionFailure(f"Analysis of {document_name} failed: {exc}") from exc

        record = normalize_output(raw)
        if record is None:
            raise ExtractionFailure(
                f"Backend answer for {document_name} could not be parsed into a record"
            )
        # Same caps and dedup as the windowed path, whatever the text length.
        return reduce_records([record], self.settings.merge)

    async def _analyze_window(
        self, prompt: str, window: Window, document_name: str, total: int
    ) -> Optional[ExtractionRecord]:
        label = f"{document_name} [window {window.index + 1}/{total}]"
        try:
            raw = await self.client.generate(prompt, window.text, label=label)
        except BackendFailure as exc:
            logger.warning("Skipping %s: %s", label, exc)
            return None

        record = normalize_output(raw)
        if record is None:
            logger.warning("Skipping %s: malformed output", label)
        return record

    async def _map_windows(
        self, prompt: str, windows: List[Window], document_name: str
    ) -> List[Optional[ExtractionRecord]]:
        total = len(windows)
        limit = self.settings.pipeline.max_concurrency

        if limit <= 1:
            partials = []
            for window in windows:
                partials.append(await self._analyze_window(prompt, window, document_name, total))
            return partials

        semaphore = asyncio.Semaphore(limit)

        async def _bounded(window: Window) -> Optional[ExtractionRecord]:
            async with semaphore:
                return await self._analyze_window(prompt, window, document_name, total)

        tasks = [asyncio.ensure_future(_bounded(w)) for w in windows]
        try:
            # gather keeps input order, which is all the reducer needs.
            return list(await asyncio.gather(*tasks))
        except Exception:
            # gather leaves siblings running when one window raises.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _finalize(self, merged: ExtractionRecord, document_name: str) -> Tuple[ExtractionRecord, bool]:
        try:
            raw = await self.client.generate(
                FINALIZE_SYSTEM_PROMPT, merged.to_json(indent=2), label=f"{document_name} [finalize]"
            )
        except BackendFailure as exc:
            logger.warning("Finalization failed for %s, keeping merged record: %s", document_name, exc)
            return merged, False

        tidied = normalize_output(raw)
        if tidied is None or tidied.is_empty():
            logger.warning("Finalization output for %s unusable, keeping merged record", document_name)
            return merged, False

        # Re-apply dedup and caps; the model may have added duplicates back.
        return reduce_records([tidied], self.settings.merge), True


def _require_text(text: str, document_name: str) -> None:
    if not text or not text.strip():
        raise ExtractionFailure(f"{document_name} contains no extractable text")


def _result(document_name: str, mode: str, record: ExtractionRecord, **extra) -> AnalysisResult:
    return AnalysisResult(
        document_name=document_name,
        mode=mode,
        record=record,
        canonical_json=record.to_json(),
        **extra,
    )


async def analyze_document(text: str, document_name: str) -> AnalysisResult:
    """Pipeline entry point using the globally configured backend."""
    return await DocumentAnalyzer().analyze(text, document_name)


async def analyze_document_full(text: str, document_name: str) -> AnalysisResult:
    """Single-shot variant of analyze_document()."""
    return await DocumentAnalyzer().analyze_full(text, document_name)
