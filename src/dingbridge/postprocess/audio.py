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
from .markers import AudioPayload, scan_markers, strip_spans

logger = get_logger(__name__)

NOUN = "audio"
DEFAULT_AUDIO_DURATION_MS = "60000"


async def process_audio_markers(text: str, ctx: PostProcessContext) -> PassResult:
    spans = scan_markers(text, kinds=("audio",))
    if not spans:
        return PassResult(text)
    cleaned = strip_spans(text, spans)
    if not ctx.oapi_token:
        logger.warning("postprocess.audio.no_token", markers=len(spans))
        return PassResult(cleaned)

    statuses: list[str] = []
    for span in spans:
        payload = span.payload
        if not isinstance(payload, AudioPayload):
            logger.warning("postprocess.audio.invalid_marker", error=span.error)
            statuses.append(invalid_line(NOUN))
            continue
        name = os.path.basename(payload.path)
        result = await ctx.client.upload_media(
            payload.path, "voice", oapi_token=ctx.oapi_token
        )
        if isinstance(result, UploadFailed):
            statuses.append(failure_line(NOUN, name, result))
            continue
        sent = await ctx.client.send_audio_message(
            ctx.target.recipient,
            result.media_id,
            str(payload.duration or DEFAULT_AUDIO_DURATION_MS),
            is_group=ctx.target.is_group,
        )
        if not sent.ok:
            statuses.append(send_failed_line(NOUN, name, sent.error))
            continue
        logger.info("postprocess.audio.sent", name=name)
        statuses.append(sent_line(NOUN, name))
    return PassResult(cleaned, statuses)
