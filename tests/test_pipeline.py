"""
test_pipeline.py — Tests for the analysis core.

These tests cover the logic that doesn't need external dependencies
(no LLM, no Tesseract, no internet). They validate:
  - Windowing coverage, exact window lengths and determinism
  - Pydantic record normalisation (keys, nulls, bare strings)
  - JSON repair and the numbered-sections parser
  - The merge reducer: first-wins scalars, ordered dedup, caps
  - Knowledge-base loading, caching and fallback

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_analysis.config import MergeConfig
from tender_analysis.errors import ConfigurationError, MalformedOutput
from tender_analysis.knowledge_base import build_augmented_prompt, get_knowledge_base
from tender_analysis.merge import reduce_records
from tender_analysis.normalizer import normalize_output, parse_sections, repair_json, require_record
from tender_analysis.prompts import (
    JSON_SYSTEM_PROMPT,
    KNOWLEDGE_BASE_DIRECTIVE,
    SECTIONS_SYSTEM_PROMPT,
    system_prompt_for,
)
from tender_analysis.schemas import ContactItem, ExtractionRecord, RequirementItem
from tender_analysis.windowing import reassemble, split_text

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
logger = logging.getLogger(__name__)


def _sample_text(length: int) -> str:
    """Non-periodic text so every window has distinct content."""
    parts = []
    i = 0
    while sum(len(p) for p in parts) < length:
        parts.append(f"Clause {i:04d} requires deliverable {i * 7 % 1013:04d}. ")
        i += 1
    return "".join(parts)[:length]


# ── Windowing ─────────────────────────────────────────────────────────

def test_windowing_coverage():
    """Windows reassemble to the original; every non-final window is exactly W."""
    cases = [(0, 1000, 100), (999, 1000, 100), (1000, 1000, 100), (1001, 1000, 100),
             (5000, 1000, 100), (20000, 1000, 100), (7777, 500, 0), (3001, 300, 299)]
    for length, size, overlap in cases:
        text = _sample_text(length)
        windows = split_text(text, size, overlap)
        assert reassemble(windows, overlap) == text, (length, size, overlap)
        for w in windows[:-1]:
            assert w.length == size, (length, size, overlap, w.index)
        assert windows[-1].end == len(text)
        for prev, cur in zip(windows, windows[1:]):
            assert cur.start == prev.start + size - overlap
    print("  ✓ test_windowing_coverage")


def test_windowing_counts():
    assert len(split_text(_sample_text(20000), 1000, 100)) == 23
    assert len(split_text("short", 1000, 100)) == 1
    assert len(split_text("", 1000, 100)) == 1
    assert len(split_text(_sample_text(1000), 1000, 100)) == 1
    assert len(split_text(_sample_text(1001), 1000, 100)) == 2
    print("  ✓ test_windowing_counts")


def test_windowing_determinism():
    text = _sample_text(12345)
    assert split_text(text, 1000, 100) == split_text(text, 1000, 100)
    print("  ✓ test_windowing_determinism")


def test_windowing_rejects_bad_parameters():
    for size, overlap in [(100, 100), (100, 150), (100, -1), (0, 0)]:
        try:
            split_text("abc", size, overlap)
        except ConfigurationError:
            continue
        raise AssertionError(f"expected ConfigurationError for {size}/{overlap}")
    print("  ✓ test_windowing_rejects_bad_parameters")


# ── Record schema ─────────────────────────────────────────────────────

def test_record_defaults():
    record = ExtractionRecord()
    assert record.document_summary == ""
    assert record.technical_requirements == []
    assert record.links == []
    assert record.is_empty()
    print("  ✓ test_record_defaults")


def test_record_normalizes_loose_input():
    """Spaced/capitalised keys, nulls, bare strings and numbers all land in shape."""
    record = ExtractionRecord.model_validate({
        "Document Summary": "Digitise supplier invoices",
        "customer_company": "Acme Utilities",
        "Technical Requirements": ["Support TIFF", {"text": "OCR accuracy 98%", "quote": "at least 98%"}],
        "functional_requirements": None,
        "contacts": ["Jane Roe", {"Full Name": "John Doe", "position": "CTO", "phone": 5551234}],
        "required_documents": [{"title": "Invoice", "fields": ["number", "date", 42]}, "Waybill"],
        "budget": "1.2M",
    })
    assert record.document_summary == "Digitise supplier invoices"
    assert record.customer_company == ["Acme Utilities"]
    assert [r.description for r in record.technical_requirements] == ["Support TIFF", "OCR accuracy 98%"]
    assert record.technical_requirements[1].quote == "at least 98%"
    assert record.functional_requirements == []
    assert record.contacts[0] == ContactItem(name="Jane Roe")
    assert record.contacts[1].name == "John Doe" and record.contacts[1].phone == "5551234"
    assert record.required_documents[0].document == "Invoice"
    assert record.required_documents[0].fields == ["number", "date", "42"]
    assert record.required_documents[1].document == "Waybill"
    assert record.extra_fields() == {"budget": "1.2M"}
    print("  ✓ test_record_normalizes_loose_input")


def test_record_to_json_keeps_unicode():
    record = ExtractionRecord(document_summary="Закупка СЭД")
    assert "Закупка СЭД" in record.to_json()
    assert json.loads(record.to_json())["document_summary"] == "Закупка СЭД"
    print("  ✓ test_record_to_json_keeps_unicode")


# ── Normalizer ────────────────────────────────────────────────────────

def test_normalizer_repairs_fenced_trailing_comma():
    record = normalize_output("```json\n{\"a\":1,}\n```")
    assert record is not None
    assert record.extra_fields() == {"a": 1}
    print("  ✓ test_normalizer_repairs_fenced_trailing_comma")


def test_repair_json_variants():
    assert repair_json('{"a": 1}') == {"a": 1}
    assert repair_json('Sure! Here it is: {"a": [1, 2,], } Hope this helps.') == {"a": [1, 2]}
    assert repair_json("[1, 2]") is None
    assert repair_json("no json here") is None
    assert repair_json('{"a": ') is None
    print("  ✓ test_repair_json_variants")


SECTIONS_ANSWER = """1. Project description
Document flow automation for a regional utility.
2. Document types to process
- Invoices
- Delivery notes
3. Requirements
Technical requirements:
- Support PDF and TIFF scans
Functional requirements:
- Export to ERP
Non-functional requirements:
- 99.5% uptime
Constraints and risks:
- Go-live before Q3
4. Required improvements
- Handwriting recognition
5. Contacts
- Jane Roe, procurement officer
6. Links and files
- Tender page: https://tenders.example.com/lot/42
- https://tenders.example.com/lot/42/annex.pdf
7. Original document
tender.pdf
"""


def test_parse_sections():
    data = parse_sections(SECTIONS_ANSWER)
    assert data["document_summary"] == "Document flow automation for a regional utility."
    assert data["required_documents"] == ["Invoices", "Delivery notes"]
    assert data["technical_requirements"] == [{"description": "Support PDF and TIFF scans"}]
    assert data["functional_requirements"] == [{"description": "Export to ERP"}]
    assert data["non_functional_requirements"] == [{"description": "99.5% uptime"}]
    assert data["constraints_and_risks"] == [{"description": "Go-live before Q3"}]
    assert data["required_improvements"] == [{"description": "Handwriting recognition"}]
    assert data["contacts"] == ["Jane Roe, procurement officer"]
    assert data["original_document_link"] == "https://tenders.example.com/lot/42"
    assert len(data["links"]) == 2
    print("  ✓ test_parse_sections")


def test_normalizer_falls_back_to_sections():
    record = normalize_output(SECTIONS_ANSWER)
    assert record is not None
    assert record.required_documents[1].document == "Delivery notes"
    assert record.contacts[0].name == "Jane Roe, procurement officer"
    print("  ✓ test_normalizer_falls_back_to_sections")


def test_normalizer_gives_up_quietly():
    assert normalize_output("I'm sorry, I can't help with that.") is None
    assert normalize_output("") is None
    try:
        require_record("nothing useful")
    except MalformedOutput:
        pass
    else:
        raise AssertionError("expected MalformedOutput")
    print("  ✓ test_normalizer_gives_up_quietly")


# ── Merge reducer ─────────────────────────────────────────────────────

def _req(description, quote=None):
    return RequirementItem(description=description, quote=quote)


def test_merge_single_record_is_identity():
    record = ExtractionRecord(
        document_summary="Summary",
        customer_company=["Acme"],
        technical_requirements=[_req("A"), _req("B", "quote b")],
        links=["https://example.com"],
    )
    assert reduce_records([record]) == record
    print("  ✓ test_merge_single_record_is_identity")


def test_merge_dedup_keeps_earliest():
    first = ExtractionRecord(technical_requirements=[_req("Support SSO", "first quote"), _req("Audit log")])
    second = ExtractionRecord(technical_requirements=[_req("  support sso ", "second quote"), _req("Backups")])
    merged = reduce_records([first, second])
    descriptions = [r.description for r in merged.technical_requirements]
    assert descriptions == ["Support SSO", "Audit log", "Backups"]
    assert merged.technical_requirements[0].quote == "first quote"
    print("  ✓ test_merge_dedup_keeps_earliest")


def test_merge_scalar_first_wins():
    a = ExtractionRecord(document_summary="From window A", customer_company=["Acme"])
    b = ExtractionRecord(document_summary="From window B", customer_company=["Other Corp"])
    empty = ExtractionRecord()
    merged = reduce_records([empty, a, b])
    assert merged.document_summary == "From window A"
    assert merged.customer_company == ["Acme"]
    print("  ✓ test_merge_scalar_first_wins")


def test_merge_extras_and_none_entries():
    a = ExtractionRecord.model_validate({"budget": ""})
    b = ExtractionRecord.model_validate({"budget": "1.2M", "deadline": "2026-12-01"})
    c = ExtractionRecord.model_validate({"budget": "9M"})
    merged = reduce_records([a, None, b, c])
    assert merged.extra_fields() == {"budget": "1.2M", "deadline": "2026-12-01"}
    print("  ✓ test_merge_extras_and_none_entries")


def test_merge_applies_caps():
    records = [
        ExtractionRecord(
            functional_requirements=[_req(f"Requirement {i}")],
            required_documents=[{"document": f"Doc {i}"}],
        )
        for i in range(30)
    ]
    merged = reduce_records(records, MergeConfig())
    assert [r.description for r in merged.functional_requirements] == [f"Requirement {i}" for i in range(12)]
    assert len(merged.required_documents) == 20

    wide = reduce_records(records, MergeConfig(list_cap=50, document_spec_cap=50))
    assert len(wide.functional_requirements) == 30
    print("  ✓ test_merge_applies_caps")


def test_merge_contacts_and_links_keys():
    a = ExtractionRecord(contacts=[{"name": "Jane Roe", "email": "jane@acme.test"}], links=["https://a.test"])
    b = ExtractionRecord(contacts=[{"name": "JANE ROE", "email": "other@acme.test"}], links=["https://A.test", "https://b.test"])
    merged = reduce_records([a, b])
    assert len(merged.contacts) == 1 and merged.contacts[0].email == "jane@acme.test"
    assert merged.links == ["https://a.test", "https://b.test"]
    print("  ✓ test_merge_contacts_and_links_keys")


# ── Knowledge-base ────────────────────────────────────────────────────

def test_knowledge_base_augments_prompt():
    with tempfile.TemporaryDirectory() as tmp:
        kb = Path(tmp) / "capabilities.json"
        kb.write_text(json.dumps({"ocr": ["PDF", "TIFF"], "export": "1C, SAP"}), encoding="utf-8")
        prompt = build_augmented_prompt("BASE", str(kb))
        assert prompt.startswith("BASE\n\n")
        assert KNOWLEDGE_BASE_DIRECTIVE in prompt
        assert '"ocr": ["PDF", "TIFF"]' in prompt

        # Cached for the life of the process: edits on disk are not seen.
        kb.write_text(json.dumps({"changed": True}), encoding="utf-8")
        assert build_augmented_prompt("BASE", str(kb)) == prompt
    print("  ✓ test_knowledge_base_augments_prompt")


def test_knowledge_base_fallbacks():
    with tempfile.TemporaryDirectory() as tmp:
        broken = Path(tmp) / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert build_augmented_prompt("BASE", str(broken)) == "BASE"
        assert build_augmented_prompt("BASE", str(Path(tmp) / "missing.json")) == "BASE"
        assert get_knowledge_base(str(Path(tmp) / "missing.json")) is None
        assert build_augmented_prompt("BASE", "") == "BASE"
    print("  ✓ test_knowledge_base_fallbacks")


def test_prompt_families():
    assert system_prompt_for("sections") == SECTIONS_SYSTEM_PROMPT
    json_prompt = system_prompt_for("json")
    assert json_prompt == JSON_SYSTEM_PROMPT.format()
    assert "{{" not in json_prompt
    print("  ✓ test_prompt_families")


# ── Runner ────────────────────────────────────────────────────────────

def run_all_tests():
    """Run all tests and report results."""
    print("\n" + "=" * 60)
    print("  Tender analysis — Core Test Suite")
    print("=" * 60 + "\n")

    tests = [
        # Windowing
        test_windowing_coverage,
        test_windowing_counts,
        test_windowing_determinism,
        test_windowing_rejects_bad_parameters,
        # Schema
        test_record_defaults,
        test_record_normalizes_loose_input,
        test_record_to_json_keeps_unicode,
        # Normalizer
        test_normalizer_repairs_fenced_trailing_comma,
        test_repair_json_variants,
        test_parse_sections,
        test_normalizer_falls_back_to_sections,
        test_normalizer_gives_up_quietly,
        # Merge
        test_merge_single_record_is_identity,
        test_merge_dedup_keeps_earliest,
        test_merge_scalar_first_wins,
        test_merge_extras_and_none_entries,
        test_merge_applies_caps,
        test_merge_contacts_and_links_keys,
        # Knowledge-base / prompts
        test_knowledge_base_augments_prompt,
        test_knowledge_base_fallbacks,
        test_prompt_families,
    ]

    passed = 0
    failed = 0

    for test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as exc:
            failed += 1
            print(f"  ✗ {test_fn.__name__} FAILED: {exc}")

    print(f"\n{'=' * 60}")
    print(f"  Results: {passed} passed, {failed} failed, {len(tests)} total")
    print(f"{'=' * 60}\n")

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
