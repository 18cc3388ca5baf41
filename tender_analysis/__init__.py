"""
tender_analysis — Tender document analysis

Turns tender documents (PDF, DOCX, CSV, TXT) into one structured
requirements record: whole-document or windowed map-reduce over an LLM,
optionally checked against a company capability knowledge-base and
published to Notion.
"""

__version__ = "1.0.0"
__author__ = "TenderExtractPro"
