from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..dingtalk.client import MAX_MEDIA_BYTES, DingTalkClient
from ..model import CardTarget, UploadFailed

LIMIT_LABEL = f"{MAX_MEDIA_BYTES // (1024 * 1024)}MB"


@dataclass(frozen=True, slots=True)
class PostProcessContext:
    client: DingTalkClient
    target: CardTarget
    oapi_token: str | None
    enable_video_processing: bool = True
    temp_dir: Path | None = None


@dataclass(slots=True)
class PassResult:
    text: str
    statuses: list[str] = field(default_factory=list)


def sent_line(noun: str, name: str) -> str:
    return f"✅ {noun} sent: {name}"


def invalid_line(noun: str) -> str:
    return f"⚠️ invalid {noun} marker"


def failure_line(noun: str, name: str, failure: UploadFailed) -> str:
    match failure.reason:
        case "not_found":
            return f"⚠️ {noun} not found: {name}"
        case "too_large":
            return f"⚠️ {noun} too large: {name} ({failure.detail}, limit {LIMIT_LABEL})"
        case _:
            return f"⚠️ {noun} upload failed: {name}"


def send_failed_line(noun: str, name: str, error: str | None) -> str:
    if error:
        return f"⚠️ {noun} send failed: {name} ({error})"
    return f"⚠️ {noun} send failed: {name}"
