"""Inline local images: upload and rewrite the reference to the media id."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from ..logging import get_logger
from ..model import UploadFailed, UploadResult
from ..utils.files import normalize_file_path
from .context import PassResult, PostProcessContext, failure_line

logger = get_logger(__name__)

NOUN = "image"

LOCAL_IMAGE_RE = re.compile(
    r"!\[([^\]]*)\]\("
    r"((?:file:///|MEDIA:|attachment:///)[^)]+"
    r"|/(?:tmp|var|private|Users|home|root)[^)]+"
    r"|[A-Za-z]:[\\/ ][^)]+)"
    r"\)"
)
BARE_IMAGE_PATH_RE = re.compile(
    r"`?("
    r"(?:/(?:tmp|var|private|Users|home|root)/[^\s`'\",)]+"
    r"|[A-Za-z]:[\\/][^\s`'\",)]+)"
    r"\.(?:png|jpg|jpeg|gif|bmp|webp)"
    r")`?",
    re.IGNORECASE,
)
LINK_LOOKBEHIND = 10


@dataclass(frozen=True, slots=True)
class ImageRef:
    start: int
    end: int
    path: str
    alt: str
    inline: bool


def find_markdown_images(text: str) -> list[ImageRef]:
    return [
        ImageRef(
            start=m.start(),
            end=m.end(),
            path=normalize_file_path(m.group(2)),
            alt=m.group(1),
            inline=True,
        )
        for m in LOCAL_IMAGE_RE.finditer(text)
    ]


def find_bare_images(text: str) -> list[ImageRef]:
    refs: list[ImageRef] = []
    for m in BARE_IMAGE_PATH_RE.finditer(text):
        before = text[max(0, m.start() - LINK_LOOKBEHIND) : m.start()]
        if "](" in before:
            continue
        refs.append(
            ImageRef(
                start=m.start(),
                end=m.end(),
                path=normalize_file_path(m.group(1)),
                alt="",
                inline=False,
            )
        )
    return refs


async def _replace(
    text: str,
    refs: list[ImageRef],
    ctx: PostProcessContext,
    uploads: dict[str, UploadResult],
    statuses: list[str],
) -> str:
    assert ctx.oapi_token is not None
    pieces: list[str] = []
    cursor = 0
    for ref in refs:
        result = uploads.get(ref.path)
        if result is None:
            result = await ctx.client.upload_media(
                ref.path, "image", oapi_token=ctx.oapi_token, max_bytes=None
            )
            uploads[ref.path] = result
            if isinstance(result, UploadFailed):
                statuses.append(failure_line(NOUN, os.path.basename(ref.path), result))
        pieces.append(text[cursor : ref.start])
        if isinstance(result, UploadFailed):
            pieces.append(text[ref.start : ref.end])
        else:
            pieces.append(f"![{ref.alt}]({result.media_id})")
            logger.debug("postprocess.image.replaced", path=ref.path, media_id=result.media_id)
        cursor = ref.end
    pieces.append(text[cursor:])
    return "".join(pieces)


async def process_images(text: str, ctx: PostProcessContext) -> PassResult:
    if not ctx.oapi_token:
        return PassResult(text)
    statuses: list[str] = []
    uploads: dict[str, UploadResult] = {}

    refs = find_markdown_images(text)
    if refs:
        logger.info("postprocess.image.markdown", count=len(refs))
        text = await _replace(text, refs, ctx, uploads, statuses)

    bare = find_bare_images(text)
    if bare:
        logger.info("postprocess.image.bare", count=len(bare))
        text = await _replace(text, bare, ctx, uploads, statuses)
    return PassResult(text, statuses)
