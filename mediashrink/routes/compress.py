from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from mediashrink.configs import settings
from mediashrink.engine.pipeline import TranscodePipeline
from mediashrink.handlers import handle_compress
from mediashrink.utils.http_utils import FetchPolicy, SourceFetcher

compress_router = APIRouter()


def get_source_fetcher() -> SourceFetcher:
    return SourceFetcher(FetchPolicy.from_settings(settings))


def get_transcode_pipeline() -> TranscodePipeline:
    return TranscodePipeline(
        settings.transcode,
        chunk_size=settings.chunk_size,
        stderr_tail_lines=settings.stderr_tail_lines,
    )


@compress_router.get("/compress")
async def compress_video(
    request: Request,
    fetcher: Annotated[SourceFetcher, Depends(get_source_fetcher)],
    pipeline: Annotated[TranscodePipeline, Depends(get_transcode_pipeline)],
    url: Annotated[Optional[str], Query(description="URL of the video to compress.")] = None,
):
    """
    Fetch a remote video and stream back a downscaled, fragmented MP4 as it is encoded.
    """
    return await handle_compress(request, url, fetcher, pipeline, settings.estimated_size_ratio)
