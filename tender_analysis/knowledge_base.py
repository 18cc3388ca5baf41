"""
knowledge_base.py — Capability knowledge-base for the improvements section.

The knowledge-base is a static JSON file shipped with the deployment
(what the product can already do). It is folded into the system prompt so
the model can say which tender requirements are covered and which need
work.

Cache contract: the file is read at most once per path per process and
the serialized text is kept forever. There is no invalidation: a new
knowledge-base means a new deployment. A missing or broken file is cached
as "absent" too, so we don't hit the disk on every request to rediscover
that it's still missing.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from tender_analysis.config import config
from tender_analysis.errors import KnowledgeBaseUnavailable
from tender_analysis.prompts import KNOWLEDGE_BASE_DIRECTIVE

logger = logging.getLogger(__name__)

# path -> serialized knowledge-base (None = not available). Write-once.
_KB_CACHE: Dict[str, Optional[str]] = {}
_KB_LOCK = threading.Lock()
_MISSING = object()


def _load_knowledge_base(path: Path) -> str:
    if not path.is_file():
        raise KnowledgeBaseUnavailable(f"Knowledge-base not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise KnowledgeBaseUnavailable(f"Cannot read knowledge-base {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise KnowledgeBaseUnavailable(f"Knowledge-base {path} is not valid JSON: {exc}") from exc
    return json.dumps(data, ensure_ascii=False)


def get_knowledge_base(path: Optional[str] = None) -> Optional[str]:
    """
    Serialized knowledge-base text, or None if it isn't available.

    Never raises. Falls back to config.knowledge_base.path.
    """
    kb_path = path if path is not None else config.knowledge_base.path
    if not kb_path:
        return None

    cached = _KB_CACHE.get(kb_path, _MISSING)
    if cached is not _MISSING:
        return cached

    with _KB_LOCK:
        if kb_path not in _KB_CACHE:
            try:
                _KB_CACHE[kb_path] = _load_knowledge_base(Path(kb_path))
                logger.info(
                    "Loaded capability knowledge-base from %s (%d chars)",
                    kb_path, len(_KB_CACHE[kb_path]),
                )
            except KnowledgeBaseUnavailable as exc:
                logger.warning("%s. Prompts will not be augmented.", exc)
                _KB_CACHE[kb_path] = None
        return _KB_CACHE[kb_path]


def build_augmented_prompt(base_prompt: str, path: Optional[str] = None) -> str:
    """Append the knowledge-base to `base_prompt`, or return it unchanged."""
    kb_text = get_knowledge_base(path)
    if not kb_text:
        return base_prompt
    return f"{base_prompt}\n\n{KNOWLEDGE_BASE_DIRECTIVE}\n{kb_text}"
