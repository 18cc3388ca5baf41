"""
notion.py — Publish an analysis record as a Notion database page.

Talks to the Notion REST API directly with httpx; the surface we need is
five endpoints (retrieve/update database, create page, append children,
update page).

Layout of a published page:
  properties: Name (customer company or file name), Upload date,
              Document type, Status, Description, Links and files,
              Contacts, Improvements, FileKey
  body:       Description, the five requirement groups (quotes as
              nested paragraphs), Document types to process, Required
              improvements, Contacts, Links and files

Notion caps a request at 100 children, so the first 50 blocks go with
page creation and the rest are appended in batches of 90. If an append
fails the half-built page is archived before raising, so a retry
doesn't leave a truncated duplicate behind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from tender_analysis.config import NotionConfig, config
from tender_analysis.errors import PublishError
from tender_analysis.schemas import REQUIREMENT_GROUPS, ExtractionRecord

logger = logging.getLogger(__name__)

# Notion rejects rich_text content over 2000 chars.
_TEXT_LIMIT = 1900
_EMPTY = "—"

STATUS_NEW = "New"
STATUS_DONE = "Done"
STATUS_ERROR = "Error"

REQUIRED_PROPERTIES = (
    ("Upload date", "date", None),
    ("Document type", "select", ("PDF", "DOCX", "CSV", "TXT")),
    ("Status", "select", (STATUS_NEW, STATUS_DONE, STATUS_ERROR)),
    ("Description", "rich_text", None),
    ("Links and files", "files", None),
    ("Contacts", "rich_text", None),
    ("Improvements", "rich_text", None),
    ("FileKey", "rich_text", None),
)

_LEGAL_FORMS = (
    "limited liability company", "public joint stock company", "joint stock company",
    "общество с ограниченной ответственностью", "публичное акционерное общество",
    "закрытое акционерное общество", "открытое акционерное общество",
    "акционерное общество", "индивидуальный предприниматель",
    "llc", "ltd", "inc", "plc", "jsc", "gmbh",
    "ооо", "пао", "зао", "оао", "ао", "ип",
)
_LEGAL_ALT = "|".join(re.escape(f) for f in _LEGAL_FORMS)
_QUOTED_RE = re.compile(r"[«“\"']\s*([^«»“”\"']+?)\s*[»”\"']")
_LEGAL_PREFIX_RE = re.compile(rf"^(?:{_LEGAL_ALT})\.?\s+", re.I)
_LEGAL_SUFFIX_RE = re.compile(rf"[,\-\s]+(?:{_LEGAL_ALT})\.?$", re.I)
_LEGAL_PAREN_RE = re.compile(rf"\((?:[^()]*?\b(?:{_LEGAL_ALT})\b[^()]*)\)", re.I)


def normalize_company_name(original: str) -> str:
    """
    'ООО «Ромашка»' -> 'Ромашка', 'Acme Widgets, LLC' -> 'Acme Widgets'.

    Falls back to the trimmed original if stripping leaves nothing.
    """
    if not original:
        return ""
    name = str(original).strip()
    quoted = _QUOTED_RE.search(name)
    if quoted:
        name = quoted.group(1).strip()
    name = _LEGAL_PREFIX_RE.sub("", name)
    name = _LEGAL_PAREN_RE.sub("", name)
    name = re.sub(r"[«»\"'“”]", "", name).strip()
    name = _LEGAL_SUFFIX_RE.sub("", name).strip()
    name = re.sub(r"\s{2,}", " ", name)
    return name or str(original).strip()


# ── block builders ────────────────────────────────────────────────────────

def _rich(text: str, url: Optional[str] = None) -> List[Dict[str, Any]]:
    node: Dict[str, Any] = {"content": str(text)[:_TEXT_LIMIT]}
    if url:
        node["link"] = {"url": url}
    return [{"type": "text", "text": node}]


def _heading(text: str, level: int = 2) -> Dict[str, Any]:
    kind = f"heading_{level}"
    return {"object": "block", "type": kind, kind: {"rich_text": _rich(text)}}


def _paragraph(text: str, url: Optional[str] = None) -> Dict[str, Any]:
    return {"object": "block", "type": "paragraph", "paragraph": {"rich_text": _rich(text, url)}}


def _list_item(kind: str, text: str, children: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"rich_text": _rich(text)}
    if children:
        body["children"] = children
    return {"object": "block", "type": kind, kind: body}


def _bullet(text: str, children=None) -> Dict[str, Any]:
    return _list_item("bulleted_list_item", text, children)


def _numbered(text: str, children=None) -> Dict[str, Any]:
    return _list_item("numbered_list_item", text, children)


def _quote_children(quote: Optional[str]):
    return [_paragraph(f"«{quote}»")] if quote else None


def build_page_blocks(record: ExtractionRecord) -> List[Dict[str, Any]]:
    """Human-readable page body for one record."""
    blocks: List[Dict[str, Any]] = [_heading("Description")]
    blocks.append(_paragraph(record.document_summary or _EMPTY))

    for field_name, title in REQUIREMENT_GROUPS:
        blocks.append(_heading(title, 3))
        items = getattr(record, field_name)
        if not items:
            blocks.append(_paragraph(_EMPTY))
        for item in items:
            blocks.append(_bullet(item.description, _quote_children(item.quote)))

    blocks.append(_heading("Document types to process"))
    if not record.required_documents:
        blocks.append(_paragraph(_EMPTY))
    for spec in record.required_documents:
        children = [_bullet(f) for f in spec.fields]
        blocks.append(_numbered(spec.document or "Document", children or None))

    blocks.append(_heading("Required improvements"))
    if not record.required_improvements:
        blocks.append(_paragraph(_EMPTY))
    for item in record.required_improvements:
        line = " — ".join(p for p in (item.description, item.priority, item.complexity) if p)
        blocks.append(_bullet(line, _quote_children(item.quote)))

    blocks.append(_heading("Contacts"))
    if not record.contacts:
        blocks.append(_paragraph(_EMPTY))
    for contact in record.contacts:
        blocks.append(_bullet(_contact_line(contact)))

    blocks.append(_heading("Links and files"))
    links = list(record.links)
    if record.original_document_link and record.original_document_link not in links:
        links.insert(0, record.original_document_link)
    if not links:
        blocks.append(_paragraph(_EMPTY))
    for url in links:
        blocks.append(_paragraph(url, url if url.startswith("http") else None))

    return blocks


def _contact_line(contact) -> str:
    return " — ".join(p for p in (contact.name, contact.role, contact.email, contact.phone) if p)


def build_page_properties(
    record: ExtractionRecord,
    *,
    file_name: str,
    document_type: str,
    file_key: Optional[str] = None,
    file_url: Optional[str] = None,
) -> Dict[str, Any]:
    company = next((c for c in record.customer_company if c), "")
    title = normalize_company_name(company or file_name)

    props: Dict[str, Any] = {
        "Name": {"title": [{"text": {"content": title[:200]}}]},
        "Upload date": {"date": {"start": datetime.now(timezone.utc).isoformat()}},
        "Document type": {"select": {"name": document_type}},
        "Status": {"select": {"name": STATUS_NEW}},
    }
    if file_key:
        props["FileKey"] = {"rich_text": _rich(file_key)}
    if record.document_summary:
        props["Description"] = {"rich_text": _rich(record.document_summary)}
    if record.contacts:
        props["Contacts"] = {"rich_text": _rich("\n".join(_contact_line(c) for c in record.contacts))}
    if record.required_improvements:
        props["Improvements"] = {
            "rich_text": _rich("\n".join(i.description for i in record.required_improvements))
        }
    link = record.original_document_link or file_url
    if link:
        props["Links and files"] = {"files": [{"name": file_name[:100], "external": {"url": link}}]}
    return props


# ── client ────────────────────────────────────────────────────────────────

@dataclass
class PublishedPage:
    page_id: str
    url: str


def page_url(page_id: str) -> str:
    return f"https://www.notion.so/{page_id.replace('-', '')}"


class NotionPublisher:
    def __init__(self, settings: Optional[NotionConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or config.notion
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                headers={
                    "Authorization": f"Bearer {self.settings.token}",
                    "Notion-Version": self.settings.api_version,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = await self._http().request(method, url, json=payload)
        except httpx.HTTPError as exc:
            raise PublishError(f"Notion {method} {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise PublishError(
                f"Notion {method} {url} -> {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        return resp.json()

    async def ensure_schema(self) -> Dict[str, Any]:
        """
        Add missing database properties and select options. Returns the
        property map actually present afterwards. An update the
        integration isn't allowed to make is logged and skipped.
        """
        db_path = f"/databases/{self.settings.database_id}"
        props = (await self._request("GET", db_path)).get("properties", {})

        update: Dict[str, Any] = {}
        for name, kind, options in REQUIRED_PROPERTIES:
            if name not in props:
                if kind == "select":
                    update[name] = {"select": {"options": [{"name": o} for o in options]}}
                else:
                    update[name] = {kind: {}}
            elif kind == "select":
                existing = [o.get("name") for o in props[name].get("select", {}).get("options", [])]
                missing = [o for o in options if o not in existing]
                if missing:
                    update[name] = {
                        "select": {"options": [{"name": o} for o in existing + missing]}
                    }

        if not update:
            return props
        try:
            return (await self._request("PATCH", db_path, {"properties": update})).get("properties", props)
        except PublishError as exc:
            logger.warning("Could not update Notion schema (%s); using existing properties.", exc)
            return props

    async def publish(
        self,
        record: ExtractionRecord,
        *,
        file_name: str,
        document_type: str = "TXT",
        file_key: Optional[str] = None,
        file_url: Optional[str] = None,
    ) -> PublishedPage:
        if not self.settings.enabled:
            raise PublishError("Notion is not configured (NOTION_TOKEN / NOTION_DATABASE_ID)")

        db_props = await self.ensure_schema()
        properties = build_page_properties(
            record, file_name=file_name, document_type=document_type,
            file_key=file_key, file_url=file_url,
        )
        # Only send properties the database actually has.
        properties = {k: v for k, v in properties.items() if k == "Name" or k in db_props}

        blocks = build_page_blocks(record)
        first, rest = blocks[:self.settings.first_batch_size], blocks[self.settings.first_batch_size:]
        page = await self._request("POST", "/pages", {
            "parent": {"database_id": self.settings.database_id},
            "properties": properties,
            "children": first,
        })
        page_id = page["id"]
        logger.info("Created Notion page %s for %s (%d blocks)", page_id, file_name, len(blocks))

        step = self.settings.append_batch_size
        try:
            for i in range(0, len(rest), step):
                await self._request("PATCH", f"/blocks/{page_id}/children", {"children": rest[i:i + step]})
        except PublishError:
            await self._archive(page_id)
            raise

        try:
            await self._request("PATCH", f"/pages/{page_id}", {
                "properties": {"Status": {"select": {"name": STATUS_DONE}}},
            })
        except PublishError as exc:
            logger.warning("Page %s published but status update failed: %s", page_id, exc)

        return PublishedPage(page_id=page_id, url=page_url(page_id))

    async def _archive(self, page_id: str) -> None:
        try:
            await self._request("PATCH", f"/pages/{page_id}", {"archived": True})
            logger.warning("Archived incomplete Notion page %s", page_id)
        except PublishError as exc:
            logger.error("Could not archive incomplete Notion page %s: %s", page_id, exc)
