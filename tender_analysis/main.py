"""
main.py — Pipeline orchestration and CLI for tender analysis.

Three stages with timing at each: extract text, analyze (whole-document,
windowed or full-text), write the canonical JSON. The class exists so
the API's job queue and people's own scripts can run the same pipeline
without going through argparse.

    python -m tender_analysis.main tender.pdf
    python -m tender_analysis.main tender.pdf --full-text -o out.json
    python -m tender_analysis.main tender.pdf --preview
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from tender_analysis.analysis import DocumentAnalyzer
from tender_analysis.config import Config, config
from tender_analysis.errors import TenderAnalysisError
from tender_analysis.ingestion import extract_text
from tender_analysis.schemas import REQUIREMENT_GROUPS

logger = logging.getLogger("tender_analysis")


class TenderAnalysisPipeline:
    """
    End-to-end analysis of one file.

    Usage:
        pipeline = TenderAnalysisPipeline()
        result = asyncio.run(pipeline.run("dataset/tender.pdf"))
        print(json.dumps(result, indent=2, ensure_ascii=False))
    """

    def __init__(self, analyzer: Optional[DocumentAnalyzer] = None, settings: Optional[Config] = None):
        self.settings = settings or config
        self._analyzer = analyzer

    @property
    def analyzer(self) -> DocumentAnalyzer:
        if self._analyzer is None:
            self._analyzer = DocumentAnalyzer(settings=self.settings)
        return self._analyzer

    async def run(
        self,
        file_path: str,
        output_path: Optional[str] = None,
        full_text: bool = False,
    ) -> Dict[str, Any]:
        """
        Returns the analysis payload (see AnalysisResult.to_payload).
        Optionally writes it to a JSON file.
        """
        overall_start = time.time()
        path = Path(file_path)
        logger.info("=" * 60)
        logger.info("Tender analysis — Processing: %s", path.name)
        logger.info("=" * 60)

        # ── Stage 1: Text extraction ─────────────────────────────
        t0 = time.time()
        logger.info("[1/3] Extracting text ...")
        document = await asyncio.to_thread(extract_text, file_path)
        logger.info("  ✓ %d chars in %.1fs", len(document.text), time.time() - t0)

        # ── Stage 2: Analysis ────────────────────────────────────
        t0 = time.time()
        logger.info("[2/3] Analyzing ...")
        if full_text:
            result = await self.analyzer.analyze_full(document.text, document.name)
        else:
            result = await self.analyzer.analyze(document.text, document.name)
        logger.info(
            "  ✓ %s mode, %d window(s), %d failed%s in %.1fs",
            result.mode, result.windows_total, len(result.failed_windows),
            ", finalized" if result.finalized else "", time.time() - t0,
        )

        # ── Stage 3: Output ──────────────────────────────────────
        payload = result.to_payload()
        if output_path:
            os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            logger.info("[3/3] Output written to: %s", output_path)

        record = result.record
        n_reqs = sum(len(getattr(record, name)) for name, _ in REQUIREMENT_GROUPS)
        logger.info("=" * 60)
        logger.info(
            "DONE in %.1fs | %d requirements | %d document types | %d improvements",
            time.time() - overall_start, n_reqs, len(record.required_documents),
            len(record.required_improvements),
        )
        logger.info("=" * 60)
        return payload

    def preview(self, file_path: str, full_text: bool = False) -> List[Dict[str, str]]:
        """The messages the first backend call would get. Nothing is sent."""
        document = extract_text(file_path)
        return self.analyzer.preview_messages(document.text, full_text=full_text)


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tender_analysis",
        description="Analyze a tender document into a structured requirements record",
    )
    parser.add_argument("file", help="Path to tender document (PDF, DOCX, CSV, TXT)")
    parser.add_argument("--full-text", action="store_true", help="One call on the large-context model, no windowing")
    parser.add_argument("--finalize", action="store_true", help="Run the finalization pass after merging windows")
    parser.add_argument("--format", choices=("json", "sections"), default=None,
                        help="Answer format to ask the model for (default: OUTPUT_FORMAT or json)")
    parser.add_argument("--preview", action="store_true", help="Print the prompt that would be sent and exit")
    parser.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.finalize:
        config.pipeline.finalize = True
    if args.format:
        config.pipeline.output_format = args.format

    pipeline = TenderAnalysisPipeline()

    try:
        if args.preview:
            messages = pipeline.preview(args.file, full_text=args.full_text)
            print(json.dumps(messages, indent=2, ensure_ascii=False))
            return
        result = asyncio.run(pipeline.run(args.file, args.output, full_text=args.full_text))
        if args.output is None:
            print(json.dumps(result, indent=2, ensure_ascii=False))
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        sys.exit(1)
    except TenderAnalysisError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
