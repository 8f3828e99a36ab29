from __future__ import annotations

import time
from pathlib import Path
from urllib.parse import unquote

TEMP_PREFIX = "dingbridge_"
_PATH_PREFIXES = ("file://", "MEDIA:", "attachment://")


def normalize_file_path(raw: str) -> str:
    """Strip ``file://``-style prefixes and percent-decoding from a local path."""
    normalized = raw.strip()
    for prefix in _PATH_PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix) :]
            break
    normalized = normalized.replace("\\ ", " ")
    return unquote(normalized)


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.2f}MB"


def format_megabytes(size: int) -> str:
    return f"{size / (1024 * 1024):.1f}MB"


def sweep_temp_files(
    directory: Path, *, max_age_s: float = 24 * 60 * 60, now: float | None = None
) -> int:
    """Delete stale downloads left behind in ``directory``; returns the count."""
    current = time.time() if now is None else now
    removed = 0
    try:
        entries = list(directory.iterdir())
    except OSError:
        return 0
    for entry in entries:
        if not entry.name.startswith(TEMP_PREFIX):
            continue
        try:
            if current - entry.stat().st_mtime > max_age_s:
                entry.unlink()
                removed += 1
        except OSError:
            continue
    return removed
