"""
normalizer.py — Turn raw backend output into an ExtractionRecord.

LLMs are unreliable JSON generators. Even when told "JSON only, no
fences", a fair share of answers come back:
  - wrapped in ```json fences
  - with a sentence of chatter before or after the object
  - with trailing commas before } or ]

The repair here is deliberately plain string surgery, tried in order of
strictness. It is a heuristic layer and everything downstream only sees
normalize_output()'s result, so it can be swapped for a grammar-based
repair later without touching the reducer.

When the prompt asked for numbered plain-text sections instead of JSON
(or the model ignored the JSON instruction entirely), parse_sections()
maps the 1-7 sections onto the same record fields.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from tender_analysis.errors import MalformedOutput
from tender_analysis.schemas import ExtractionRecord

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

# "3. Requirements" — only sections 1..7 count as top-level headers.
_SECTION_RE = re.compile(r"^\s*([1-7])\.\s+(.+)$")
_BULLET_RE = re.compile(r"^\s*[-–•*]\s+")
_URL_RE = re.compile(r"https?://\S+")

_REQUIREMENT_HEADINGS = (
    (re.compile(r"non[- ]?functional", re.I), "non_functional_requirements"),
    (re.compile(r"functional", re.I), "functional_requirements"),
    (re.compile(r"technical", re.I), "technical_requirements"),
    (re.compile(r"infrastructur", re.I), "infrastructure_requirements"),
    (re.compile(r"constraints|risks", re.I), "constraints_and_risks"),
)
_REQUIREMENT_SUBHEAD_RE = re.compile(
    r"^\s*[-–•*]?\s*((?:technical|functional|non[- ]?functional|infrastructure)\s+requirements"
    r"|constraints\s+and\s+risks)\s*:?\s*$",
    re.I,
)


def strip_code_fences(text: str) -> str:
    cleaned = _FENCE_OPEN_RE.sub("", text, count=1)
    return _FENCE_CLOSE_RE.sub("", cleaned).strip()


def repair_json(raw: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort parse of a JSON object out of LLM output.

    1. strict parse
    2. strip fences, slice first "{" .. last "}", drop trailing commas, parse
    3. give up -> None
    """
    if raw is None:
        return None
    text = str(raw)

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    cleaned = strip_code_fences(text)
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first == -1 or last <= first:
        return None
    cleaned = cleaned[first:last + 1]
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _parse_bullets(lines: List[str]) -> List[str]:
    """
    Collect "- item" lines. Loose non-bullet lines between bullets are
    glued together into one item (models love wrapping long bullets).
    """
    items: List[str] = []
    buffer: List[str] = []

    def _flush():
        if buffer:
            text = " ".join(buffer).strip()
            if text:
                items.append(text)
            buffer.clear()

    for line in lines:
        if _BULLET_RE.match(line):
            _flush()
            text = _BULLET_RE.sub("", line).strip()
            if text:
                items.append(text)
        elif line.strip():
            buffer.append(line.strip())
    _flush()
    return items


def _requirement_key(heading: str) -> str:
    for pattern, key in _REQUIREMENT_HEADINGS:
        if pattern.search(heading):
            return key
    return "constraints_and_risks"


def parse_sections(text: str) -> Optional[Dict[str, Any]]:
    """
    Map a plain-text "1. ... 7." answer onto record fields.

    Returns None when no numbered section headers are found or nothing
    could be pulled out of them.
    """
    lines = str(text).splitlines()
    headers = []
    for idx, line in enumerate(lines):
        match = _SECTION_RE.match(line)
        if match:
            headers.append((idx, int(match.group(1))))
    if not headers:
        return None

    def section(num: int) -> List[str]:
        # First occurrence wins; a model repeating "3." inside a list
        # shouldn't reset the section.
        for pos, (idx, n) in enumerate(headers):
            if n == num:
                end = headers[pos + 1][0] if pos + 1 < len(headers) else len(lines)
                return lines[idx + 1:end]
        return []

    data: Dict[str, Any] = {}

    summary = "\n".join(section(1)).strip()
    if summary:
        data["document_summary"] = summary

    documents = _parse_bullets(section(2))
    if documents:
        data["required_documents"] = documents

    sec3 = section(3)
    subheads = [i for i, line in enumerate(sec3) if _REQUIREMENT_SUBHEAD_RE.match(line)]
    for pos, start in enumerate(subheads):
        end = subheads[pos + 1] if pos + 1 < len(subheads) else len(sec3)
        key = _requirement_key(_REQUIREMENT_SUBHEAD_RE.match(sec3[start]).group(1))
        items = _parse_bullets(sec3[start + 1:end])
        if items:
            data.setdefault(key, []).extend({"description": item} for item in items)

    improvements = _parse_bullets(section(4))
    if improvements:
        data["required_improvements"] = [{"description": item} for item in improvements]

    contacts = _parse_bullets(section(5))
    if contacts:
        data["contacts"] = contacts

    urls = _URL_RE.findall("\n".join(section(6)))
    if urls:
        data["original_document_link"] = urls[0]
        data["links"] = urls

    # Section 7 only points back at the upload; the link above covers it.
    return data or None


def normalize_output(raw: str) -> Optional[ExtractionRecord]:
    """
    Raw backend text -> ExtractionRecord, or None if nothing usable.

    Never raises. None means "empty contribution" to the reducer.
    """
    data = repair_json(raw)
    source = "json"
    if data is None:
        data = parse_sections(raw or "")
        source = "sections"
    if data is None:
        logger.warning(
            "Unparseable backend output (%d chars). First 300: %r",
            len(raw or ""), (raw or "")[:300],
        )
        return None

    try:
        record = ExtractionRecord.model_validate(data)
    except ValidationError as exc:
        logger.warning("Backend output parsed (%s) but failed validation: %s", source, exc)
        return None

    logger.debug("Normalized backend output via %s parser", source)
    return record


def require_record(raw: str) -> ExtractionRecord:
    """normalize_output() for paths where an unusable answer is fatal."""
    record = normalize_output(raw)
    if record is None:
        raise MalformedOutput("Backend output could not be repaired into a record")
    return record
