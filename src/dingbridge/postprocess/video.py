"""Video markers: probe, thumbnail, upload both, send a video message."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import anyio

from ..logging import get_logger
from ..model import UploadFailed
from ..dingtalk.client import MAX_MEDIA_BYTES
from ..utils.files import TEMP_PREFIX, format_megabytes, normalize_file_path
from .context import (
    PassResult,
    PostProcessContext,
    failure_line,
    invalid_line,
    send_failed_line,
    sent_line,
)
from .markers import VideoPayload, scan_markers, strip_spans

logger = get_logger(__name__)

NOUN = "video"


@dataclass(frozen=True, slots=True)
class VideoMetadata:
    duration_s: int
    width: int
    height: int


DEFAULT_METADATA = VideoMetadata(duration_s=10, width=1280, height=720)


async def extract_video_metadata(path: str) -> VideoMetadata:
    ffprobe = shutil.which("ffprobe")
    if ffprobe is None:
        logger.warning("video.ffprobe_missing")
        return DEFAULT_METADATA
    result = await anyio.run_process(
        [
            ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            path,
        ],
        check=False,
    )
    if result.returncode != 0:
        logger.warning(
            "video.ffprobe_failed",
            path=path,
            stderr=result.stderr.decode(errors="replace")[-500:],
        )
        return DEFAULT_METADATA
    try:
        info = json.loads(result.stdout)
    except ValueError:
        return DEFAULT_METADATA
    duration = info.get("format", {}).get("duration")
    stream = next(
        (s for s in info.get("streams", []) if s.get("codec_type") == "video"), {}
    )
    try:
        duration_s = int(float(duration)) if duration else DEFAULT_METADATA.duration_s
    except (TypeError, ValueError):
        duration_s = DEFAULT_METADATA.duration_s
    return VideoMetadata(
        duration_s=duration_s or DEFAULT_METADATA.duration_s,
        width=stream.get("width") or DEFAULT_METADATA.width,
        height=stream.get("height") or DEFAULT_METADATA.height,
    )


async def extract_video_thumbnail(path: str, output: Path) -> Path | None:
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg is None:
        logger.warning("video.ffmpeg_missing")
        return None
    result = await anyio.run_process(
        [
            ffmpeg,
            "-y",
            "-ss",
            "1",
            "-i",
            path,
            "-frames:v",
            "1",
            "-vf",
            "scale=-2:360",
            str(output),
        ],
        check=False,
    )
    if result.returncode != 0 or not await anyio.Path(output).exists():
        logger.warning(
            "video.thumbnail_failed",
            path=path,
            stderr=result.stderr.decode(errors="replace")[-500:],
        )
        return None
    return output


async def process_video_markers(text: str, ctx: PostProcessContext) -> PassResult:
    spans = scan_markers(text, kinds=("video",))
    if not spans:
        return PassResult(text)
    cleaned = strip_spans(text, spans)
    if not ctx.oapi_token:
        logger.warning("postprocess.video.no_token", markers=len(spans))
        return PassResult(cleaned)

    temp_dir = ctx.temp_dir or Path(tempfile.gettempdir())
    statuses: list[str] = []
    for span in spans:
        payload = span.payload
        if not isinstance(payload, VideoPayload):
            logger.warning("postprocess.video.invalid_marker", error=span.error)
            statuses.append(invalid_line(NOUN))
            continue
        path = normalize_file_path(payload.path)
        name = os.path.basename(path)
        try:
            size = (await anyio.Path(path).stat()).st_size
        except OSError:
            statuses.append(failure_line(NOUN, name, UploadFailed("not_found", path)))
            continue
        if size > MAX_MEDIA_BYTES:
            too_large = UploadFailed("too_large", format_megabytes(size))
            statuses.append(failure_line(NOUN, name, too_large))
            continue
        statuses.append(await _send_video(ctx, path, name, temp_dir))
    return PassResult(cleaned, statuses)


async def _send_as_file(ctx: PostProcessContext, path: str, name: str) -> str:
    assert ctx.oapi_token is not None
    uploaded = await ctx.client.upload_media(path, "file", oapi_token=ctx.oapi_token)
    if isinstance(uploaded, UploadFailed):
        return failure_line(NOUN, name, uploaded)
    ext = os.path.splitext(name)[1].lstrip(".") or "mp4"
    sent = await ctx.client.send_file_message(
        ctx.target.recipient,
        uploaded.media_id,
        name,
        ext,
        is_group=ctx.target.is_group,
    )
    if not sent.ok:
        return send_failed_line(NOUN, name, sent.error)
    return sent_line(NOUN, name)


async def _send_video(
    ctx: PostProcessContext, path: str, name: str, temp_dir: Path
) -> str:
    assert ctx.oapi_token is not None
    if not ctx.enable_video_processing:
        return await _send_as_file(ctx, path, name)
    metadata = await extract_video_metadata(path)
    thumbnail = temp_dir / f"{TEMP_PREFIX}thumb_{int(time.time() * 1000)}.jpg"
    try:
        if await extract_video_thumbnail(path, thumbnail) is None:
            return f"⚠️ video processing failed: {name} (no thumbnail)"
        video = await ctx.client.upload_media(path, "video", oapi_token=ctx.oapi_token)
        if isinstance(video, UploadFailed):
            return failure_line(NOUN, name, video)
        picture = await ctx.client.upload_media(
            str(thumbnail), "image", oapi_token=ctx.oapi_token
        )
        if isinstance(picture, UploadFailed):
            return f"⚠️ video thumbnail upload failed: {name}"
        sent = await ctx.client.send_video_message(
            ctx.target.recipient,
            video.media_id,
            picture.media_id,
            metadata.duration_s,
            is_group=ctx.target.is_group,
        )
        if not sent.ok:
            return send_failed_line(NOUN, name, sent.error)
        logger.info("postprocess.video.sent", name=name, duration_s=metadata.duration_s)
        return sent_line(NOUN, name)
    finally:
        try:
            await anyio.Path(thumbnail).unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("video.thumbnail_cleanup_failed", error=str(exc))
