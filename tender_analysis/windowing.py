"""
windowing.py — Fixed-size overlapping windows for map-reduce analysis.

Long tenders (200+ pages of general conditions, annexures, forms) blow
past what we want to send in a single request, so they get cut into
character windows that overlap. The overlap is what keeps a requirement
sentence intact: if the boundary at 1000 cuts "The system shall support
SSO via SAML 2.0" in half, the next window starts 100 chars earlier and
sees the whole sentence.

Characters, not tokens. The window only needs to be "small enough", and
a char split is deterministic and needs no tokenizer.
"""

from __future__ import annotations

import logging
from typing import List

from tender_analysis.errors import ConfigurationError
from tender_analysis.schemas import Window

logger = logging.getLogger(__name__)


def split_text(text: str, window_size: int, overlap: int) -> List[Window]:
    """
    Split `text` into the fewest windows of `window_size` chars where each
    window starts `window_size - overlap` chars after the previous one.

    Every window except the last is exactly `window_size` long. Text that
    fits in one window comes back as a single window holding all of it
    (empty text included).

    Raises:
        ConfigurationError: unless window_size > overlap >= 0.
    """
    if overlap < 0 or window_size <= overlap:
        raise ConfigurationError(
            f"Window size must exceed overlap and overlap must be >= 0 "
            f"(got window_size={window_size}, overlap={overlap})"
        )

    if len(text) <= window_size:
        return [Window(index=0, start=0, text=text)]

    step = window_size - overlap
    windows: List[Window] = []
    start = 0
    while True:
        end = min(start + window_size, len(text))
        windows.append(Window(index=len(windows), start=start, text=text[start:end]))
        if end >= len(text):
            break
        start += step

    logger.debug(
        "Split %d chars into %d windows (size=%d, overlap=%d)",
        len(text), len(windows), window_size, overlap,
    )
    return windows


def reassemble(windows: List[Window], overlap: int) -> str:
    """Inverse of split_text: drops each later window's overlap prefix."""
    if not windows:
        return ""
    parts = [windows[0].text]
    for window in windows[1:]:
        parts.append(window.text[overlap:])
    return "".join(parts)
