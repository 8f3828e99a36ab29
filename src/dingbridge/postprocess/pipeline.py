from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from ..logging import get_logger
from .audio import process_audio_markers
from .context import PassResult, PostProcessContext
from .file import process_file_markers
from .image import process_images
from .video import process_video_markers

logger = get_logger(__name__)

Pass = Callable[[str, PostProcessContext], Awaitable[PassResult]]

DEFAULT_PASSES: tuple[Pass, ...] = (
    process_images,
    process_video_markers,
    process_audio_markers,
    process_file_markers,
)


@dataclass(frozen=True, slots=True)
class PipelineResult:
    text: str
    statuses: tuple[str, ...] = ()


async def run_pipeline(
    text: str,
    ctx: PostProcessContext,
    *,
    passes: Sequence[Pass] = DEFAULT_PASSES,
) -> PipelineResult:
    """Run each pass in order over the output of the previous one."""
    statuses: list[str] = []
    current = text
    for step in passes:
        result = await step(current, ctx)
        current = result.text
        statuses.extend(result.statuses)
    if statuses:
        status_text = "\n".join(statuses)
        current = f"{current}\n\n{status_text}" if current else status_text
        logger.info("postprocess.done", statuses=len(statuses))
    return PipelineResult(text=current, statuses=tuple(statuses))
