"""Tokenizer for the media markers embedded in generated text.

A marker is ``[DINGTALK_<KIND>]{json}[/DINGTALK_<KIND>]``. Scanning yields typed
spans with positions; stripping is a separate step over those spans.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal, TypeAlias

import msgspec

MarkerKind: TypeAlias = Literal["file", "video", "audio"]

MARKER_TAGS: dict[MarkerKind, str] = {
    "file": "DINGTALK_FILE",
    "video": "DINGTALK_VIDEO",
    "audio": "DINGTALK_AUDIO",
}
ALL_KINDS: tuple[MarkerKind, ...] = ("video", "audio", "file")

_TAG_TO_KIND: dict[str, MarkerKind] = {tag: kind for kind, tag in MARKER_TAGS.items()}
_MARKER_RE = re.compile(
    r"\[(DINGTALK_(?:FILE|VIDEO|AUDIO))\](.*?)\[/\1\]",
    re.DOTALL,
)
_OPEN_TAG_RE = re.compile(r"\[DINGTALK_(?:FILE|VIDEO|AUDIO)\]")
_OPEN_TAGS = tuple(f"[{tag}]" for tag in MARKER_TAGS.values())


class FilePayload(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    path: str
    file_name: str | int | None = None
    file_type: str | int | None = None


class VideoPayload(msgspec.Struct, forbid_unknown_fields=False):
    path: str


class AudioPayload(msgspec.Struct, forbid_unknown_fields=False):
    path: str
    duration: str | int | None = None


MarkerPayload: TypeAlias = FilePayload | VideoPayload | AudioPayload

_PAYLOAD_TYPES: dict[MarkerKind, type[MarkerPayload]] = {
    "file": FilePayload,
    "video": VideoPayload,
    "audio": AudioPayload,
}


@dataclass(frozen=True, slots=True)
class MarkerSpan:
    kind: MarkerKind
    payload: MarkerPayload | None
    raw: str
    start: int
    end: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


def _decode_payload(kind: MarkerKind, body: str) -> tuple[MarkerPayload | None, str | None]:
    try:
        payload = msgspec.json.decode(body.strip(), type=_PAYLOAD_TYPES[kind])
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        return None, str(exc)
    if not payload.path.strip():
        return None, "empty path"
    return payload, None


def scan_markers(
    text: str, kinds: Iterable[MarkerKind] = ALL_KINDS
) -> list[MarkerSpan]:
    wanted = set(kinds)
    spans: list[MarkerSpan] = []
    for match in _MARKER_RE.finditer(text):
        kind = _TAG_TO_KIND[match.group(1)]
        if kind not in wanted:
            continue
        payload, error = _decode_payload(kind, match.group(2))
        spans.append(
            MarkerSpan(
                kind=kind,
                payload=payload,
                raw=match.group(0),
                start=match.start(),
                end=match.end(),
                error=error,
            )
        )
    return spans


def strip_spans(text: str, spans: Iterable[MarkerSpan]) -> str:
    ordered = sorted(spans, key=lambda span: span.start)
    if not ordered:
        return text
    pieces: list[str] = []
    cursor = 0
    for span in ordered:
        if span.start < cursor:
            continue
        pieces.append(text[cursor : span.start])
        cursor = span.end
    pieces.append(text[cursor:])
    return "".join(pieces).strip()


def clean_media_markers(text: str) -> str:
    """Remove every marker; used for partial content shown while streaming.

    A trailing marker whose closing tag has not arrived yet is hidden too,
    as is an opening tag cut off mid-name such as ``[DINGTALK_FI``.
    """
    cleaned = strip_spans(text, scan_markers(text))
    dangling = _OPEN_TAG_RE.search(cleaned)
    if dangling is not None:
        cleaned = cleaned[: dangling.start()].rstrip()
    bracket = cleaned.rfind("[")
    if bracket != -1 and _is_partial_open_tag(cleaned[bracket:]):
        cleaned = cleaned[:bracket].rstrip()
    return cleaned


def _is_partial_open_tag(tail: str) -> bool:
    # at least "[D"; a lone trailing bracket stays visible
    if len(tail) < 2:
        return False
    return any(tag.startswith(tail) for tag in _OPEN_TAGS)
