"""
merge.py — Fold per-window records into one merged record.

Policies, applied in window order (left to right across the document):

  scalars / customer_company / unknown extra keys
      first non-empty value wins; later windows never overwrite it.

  lists of items
      order-preserving dedup on a per-field key (description, contact
      name, document title, or the link string itself), trimmed and
      lower-cased. The first item seen for a key is kept whole; later
      duplicates are dropped, not merged field-by-field. The result is
      cut to the field's cap.

This is an exact-key streaming merge. "Supports SSO" and "SSO must be
supported" from two windows both survive; the optional finalization pass
is where paraphrases get folded, not here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from tender_analysis.config import MergeConfig, config
from tender_analysis.schemas import REQUIREMENT_GROUPS, SCALAR_FIELDS, ExtractionRecord

logger = logging.getLogger(__name__)

# field -> which cap applies
_ITEM_FIELDS: Dict[str, str] = {
    **{name: "list_cap" for name, _ in REQUIREMENT_GROUPS},
    "required_improvements": "list_cap",
    "contacts": "list_cap",
    "required_documents": "document_spec_cap",
}
_STRING_LIST_FIELDS: Dict[str, str] = {"links": "list_cap"}


def dedup_key(text: Any) -> str:
    return str(text or "").strip().lower()


class _OrderedDedup:
    """Insertion-ordered map that ignores repeated keys."""

    def __init__(self, key_fn: Callable[[Any], str]):
        self._key_fn = key_fn
        self._items: Dict[str, Any] = {}

    def add_all(self, items: Iterable[Any]) -> None:
        for item in items:
            key = dedup_key(self._key_fn(item))
            if key and key not in self._items:
                self._items[key] = item

    def values(self, cap: int) -> List[Any]:
        return list(self._items.values())[:cap]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def reduce_records(
    records: Iterable[Optional[ExtractionRecord]],
    merge_config: Optional[MergeConfig] = None,
) -> ExtractionRecord:
    """
    Merge records in the order given. None entries (unparseable windows)
    are skipped.
    """
    caps = merge_config or config.merge

    item_maps = {
        name: _OrderedDedup(lambda item: item.primary_text())
        for name in _ITEM_FIELDS
    }
    string_maps = {name: _OrderedDedup(lambda s: s) for name in _STRING_LIST_FIELDS}
    scalars: Dict[str, Any] = {name: "" for name in SCALAR_FIELDS}
    customer_company: List[str] = []
    extras: Dict[str, Any] = {}

    merged_count = 0
    for record in records:
        if record is None:
            continue
        merged_count += 1

        for name in SCALAR_FIELDS:
            value = getattr(record, name)
            if _is_empty(scalars[name]) and not _is_empty(value):
                scalars[name] = value

        if not customer_company and record.customer_company:
            customer_company = list(record.customer_company)

        for name, dedup in item_maps.items():
            dedup.add_all(getattr(record, name))
        for name, dedup in string_maps.items():
            dedup.add_all(getattr(record, name))

        for key, value in record.extra_fields().items():
            if _is_empty(extras.get(key)) and not _is_empty(value):
                extras[key] = value

    data: Dict[str, Any] = dict(scalars)
    data["customer_company"] = customer_company
    for name, dedup in item_maps.items():
        data[name] = dedup.values(getattr(caps, _ITEM_FIELDS[name]))
    for name, dedup in string_maps.items():
        data[name] = dedup.values(getattr(caps, _STRING_LIST_FIELDS[name]))

    merged = ExtractionRecord(**data, **extras)
    logger.info(
        "Merged %d partial records: %s",
        merged_count,
        ", ".join(f"{name}={len(data[name])}" for name in _ITEM_FIELDS),
    )
    return merged
