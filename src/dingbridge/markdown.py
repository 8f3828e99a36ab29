from __future__ import annotations

import re

_MARKDOWN_RE = re.compile(r"^[#*>-]|[*_`#\[\]]")
_TITLE_STRIP_RE = re.compile(r"^[#*\s\->]+")
TITLE_LIMIT = 20


def has_markdown_features(text: str) -> bool:
    return bool(_MARKDOWN_RE.search(text)) or "\n" in text


def extract_title(text: str, default: str = "Message") -> str:
    first_line = text.split("\n", 1)[0]
    title = _TITLE_STRIP_RE.sub("", first_line)[:TITLE_LIMIT]
    return title or default
