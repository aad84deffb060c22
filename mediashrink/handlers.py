import enum
import logging
import typing
from dataclasses import dataclass

from fastapi import Request, Response
from starlette.responses import PlainTextResponse

from .const import COMPRESSED_PREFIX, OUTPUT_MEDIA_TYPE
from .engine import EngineFailed, EngineFinished, EngineProgress, EngineStarted, TranscodeEvent
from .engine.pipeline import TranscodeHandle, TranscodePipeline
from .errors import ClientInputError, EngineError, StreamTransportError, UpstreamFetchError
from .utils.filename import resolve_filename
from .utils.http_utils import RelayStreamingResponse, SourceFetcher, SourceInfo, SourceStream

logger = logging.getLogger(__name__)


class RelayState(str, enum.Enum):
    IDLE = "idle"
    PROBING = "probing"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (RelayState.DONE, RelayState.FAILED)


@dataclass
class RequestContext:
    """Per-request state. The connected flag is the only field written from outside the relay flow."""

    source_url: str
    state: RelayState = RelayState.IDLE
    client_connected: bool = True
    response_started: bool = False
    source: typing.Optional[SourceStream] = None
    handle: typing.Optional[TranscodeHandle] = None

    def transition(self, state: RelayState):
        if self.state in TERMINAL_STATES:
            return
        logger.debug(f"{self.source_url}: {self.state.value} -> {state.value}")
        self.state = state

    def mark_disconnected(self):
        """
        Record a client disconnect and stop the engine right away.
        """
        if not self.client_connected:
            return
        self.client_connected = False
        logger.info("Client disconnected")
        self.transition(RelayState.FAILED)
        if self.handle is not None:
            self.handle.kill()

    def on_engine_event(self, event: TranscodeEvent):
        if isinstance(event, EngineStarted):
            logger.info(f"Started FFmpeg with command: {event.command_line}")
        elif isinstance(event, EngineProgress):
            if not self.client_connected:
                return
            if event.percent is not None:
                logger.debug(f"Processing: {event.percent}% done")
            elif event.processed_seconds is not None:
                logger.debug(f"Processing: {event.processed_seconds:.1f}s of media encoded")
        elif isinstance(event, EngineFailed):
            if self.client_connected:
                logger.error(f"FFmpeg error: {event.message}")
                if event.stderr:
                    logger.error(f"FFmpeg stderr: {event.stderr}")
            else:
                logger.info("FFmpeg process terminated due to client disconnect")
        elif isinstance(event, EngineFinished):
            logger.info("Compression finished successfully")

    async def cleanup(self):
        """
        Tear down the engine and the source stream. Safe to call on every exit path.
        """
        try:
            if self.handle is not None:
                self.handle.kill()
                await self.handle.aclose()
            elif self.source is not None:
                await self.source.aclose()
        except Exception as e:
            logger.error(f"Error during relay cleanup: {e}")


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: A plain-text HTTP response corresponding to the exception type.
    """
    if isinstance(exception, ClientInputError):
        return PlainTextResponse(exception.message, status_code=exception.status_code)
    elif isinstance(exception, UpstreamFetchError):
        logger.error(f"Error fetching source: {exception}")
        return PlainTextResponse(f"Failed to process video: {exception.message}", status_code=exception.status_code)
    elif isinstance(exception, StreamTransportError):
        logger.error(f"Input stream error: {exception}")
        return PlainTextResponse("Error processing video stream", status_code=exception.status_code)
    elif isinstance(exception, EngineError):
        logger.error(f"Compression failed: {exception}")
        return PlainTextResponse("Compression failed", status_code=exception.status_code)
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return PlainTextResponse("Internal server error", status_code=500)


def build_response_headers(filename: str, info: SourceInfo, estimated_size_ratio: typing.Optional[float]) -> dict:
    headers = {
        "content-disposition": f'attachment; filename="{COMPRESSED_PREFIX}{filename}"',
        "content-type": OUTPUT_MEDIA_TYPE,
    }
    if info.content_length:
        headers["x-original-size"] = str(info.content_length)
        if estimated_size_ratio:
            headers["x-estimated-size"] = str(int(info.content_length * estimated_size_ratio))
    return headers


async def relay_output(context: RequestContext) -> typing.AsyncGenerator[bytes, None]:
    """
    Forward engine output chunks in order until EOF, failure or client disconnect.
    """
    try:
        async for chunk in context.handle.output():
            if not context.client_connected:
                break
            if context.state is RelayState.TRANSCODING:
                context.transition(RelayState.STREAMING)
            yield chunk
        context.transition(RelayState.DONE if context.client_connected else RelayState.FAILED)
    except Exception:
        context.transition(RelayState.FAILED)
        raise
    finally:
        context.handle.kill()


async def handle_compress(
    request: typing.Optional[Request],
    url: typing.Optional[str],
    fetcher: SourceFetcher,
    pipeline: TranscodePipeline,
    estimated_size_ratio: typing.Optional[float] = None,
) -> Response:
    """
    Handle a compress request: probe, open, transcode and relay the source video.

    Args:
        request (Request, optional): The incoming request, used to notice early disconnects.
        url (str, optional): The source video URL.
        fetcher (SourceFetcher): Outbound fetcher for the source.
        pipeline (TranscodePipeline): Engine launcher.
        estimated_size_ratio (float, optional): Ratio used for the X-Estimated-Size header.

    Returns:
        Response: An error response, or a streaming ``video/mp4`` response.
    """
    context = RequestContext(source_url=url or "")
    if not url or not url.strip():
        context.transition(RelayState.FAILED)
        return handle_exceptions(ClientInputError("Missing video URL"))
    url = url.strip()

    try:
        context.transition(RelayState.PROBING)
        info = await fetcher.probe(url)
        filename = resolve_filename(info.disposition, url)

        context.transition(RelayState.FETCHING)
        context.source = await fetcher.open(url)
        headers = build_response_headers(filename, info, estimated_size_ratio)

        if request is not None and await request.is_disconnected():
            context.mark_disconnected()
            await context.cleanup()
            return Response(status_code=499)

        context.transition(RelayState.TRANSCODING)
        context.handle = await pipeline.start(context.source, listener=context.on_engine_event)
    except Exception as e:
        context.transition(RelayState.FAILED)
        await context.cleanup()
        return handle_exceptions(e)

    return RelayStreamingResponse(
        relay_output(context),
        context=context,
        error_handler=handle_exceptions,
        headers=headers,
        media_type=OUTPUT_MEDIA_TYPE,
    )
