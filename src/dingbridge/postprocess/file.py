from __future__ import annotations

import os

from ..logging import get_logger
from ..model import UploadFailed
from .context import (
    PassResult,
    PostProcessContext,
    failure_line,
    invalid_line,
    send_failed_line,
    sent_line,
)
from .markers import FilePayload, scan_markers, strip_spans

logger = get_logger(__name__)

NOUN = "file"


def _file_type(payload: FilePayload, name: str) -> str:
    if payload.file_type:
        return str(payload.file_type)
    ext = os.path.splitext(name)[1].lstrip(".")
    return ext or "file"


async def process_file_markers(text: str, ctx: PostProcessContext) -> PassResult:
    spans = scan_markers(text, kinds=("file",))
    if not spans:
        return PassResult(text)
    cleaned = strip_spans(text, spans)
    if not ctx.oapi_token:
        logger.warning("postprocess.file.no_token", markers=len(spans))
        return PassResult(cleaned)

    statuses: list[str] = []
    for span in spans:
        payload = span.payload
        if not isinstance(payload, FilePayload):
            logger.warning("postprocess.file.invalid_marker", error=span.error)
            statuses.append(invalid_line(NOUN))
            continue
        name = str(payload.file_name or os.path.basename(payload.path))
        result = await ctx.client.upload_media(
            payload.path, "file", oapi_token=ctx.oapi_token
        )
        if isinstance(result, UploadFailed):
            statuses.append(failure_line(NOUN, name, result))
            continue
        sent = await ctx.client.send_file_message(
            ctx.target.recipient,
            result.media_id,
            name,
            _file_type(payload, name),
            is_group=ctx.target.is_group,
        )
        if not sent.ok:
            statuses.append(send_failed_line(NOUN, name, sent.error))
            continue
        logger.info("postprocess.file.sent", name=name)
        statuses.append(sent_line(NOUN, name))
    return PassResult(cleaned, statuses)
