import logging
import typing
from dataclasses import dataclass, field
from types import MappingProxyType

import anyio
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from mediashrink.configs import Settings, TransportConfig
from mediashrink.const import SOURCE_REQUEST_HEADERS
from mediashrink.errors import StreamTransportError, UpstreamFetchError

if typing.TYPE_CHECKING:
    from mediashrink.handlers import RequestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchPolicy:
    """Immutable outbound request policy shared by the probe and the body fetch."""

    headers: typing.Mapping[str, str]
    max_redirects: int = 5
    probe_timeout: float = 5.0
    transport_config: TransportConfig = field(default_factory=TransportConfig)
    enable_streaming_progress: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "FetchPolicy":
        headers = {"user-agent": settings.user_agent, **SOURCE_REQUEST_HEADERS}
        return cls(
            headers=MappingProxyType(headers),
            max_redirects=settings.max_redirects,
            probe_timeout=settings.probe_timeout,
            transport_config=settings.transport_config,
            enable_streaming_progress=settings.enable_streaming_progress,
        )


def create_httpx_client(
    policy: FetchPolicy,
    timeout: typing.Optional[float] = None,
    transport: typing.Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient that follows the policy's redirect bound.

    Args:
        policy (FetchPolicy): Outbound request policy.
        timeout (float, optional): Request timeout in seconds. None disables it.
        transport (httpx.AsyncBaseTransport, optional): Explicit transport, overriding the configured mounts.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs = {}
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["mounts"] = policy.transport_config.get_mounts()

    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=policy.max_redirects,
        timeout=httpx.Timeout(timeout),
        **kwargs,
    )


@dataclass
class SourceInfo:
    content_length: typing.Optional[int] = None
    content_type: typing.Optional[str] = None
    disposition: typing.Optional[str] = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "SourceInfo":
        return cls(
            content_length=parse_total_size(headers),
            content_type=headers.get("content-type"),
            disposition=headers.get("content-disposition"),
        )


def parse_total_size(headers: httpx.Headers) -> typing.Optional[int]:
    """
    Compute the full resource size from Content-Range or Content-Length.

    A ranged probe can come back as 206, in which case only Content-Range carries the total.
    """
    content_range = headers.get("content-range", "")
    try:
        if content_range:
            total = content_range.rsplit("/", 1)[-1].strip()
            return int(total) if total != "*" else None
        if "content-length" in headers:
            return int(headers["content-length"])
    except ValueError:
        logger.debug(f"Unparsable size headers: range={content_range!r} length={headers.get('content-length')!r}")
    return None


class SourceStream:
    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, show_progress: bool = False):
        """
        Wrap an open streaming response. Exactly one consumer iterates it.

        Args:
            client (httpx.AsyncClient): The client owning the connection.
            response (httpx.Response): The response opened with ``stream=True``.
            show_progress (bool): Whether to render a tqdm progress bar while reading.
        """
        self.client = client
        self.response = response
        self.show_progress = show_progress
        self.progress_bar = None
        self.bytes_transferred = 0
        self.closed = False

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    async def iter_bytes(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream the body as an async byte generator.

        Raises:
            StreamTransportError: If the connection fails mid-transfer.
        """
        try:
            if self.show_progress:
                with tqdm_asyncio(
                    total=parse_total_size(self.response.headers),
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Fetching",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        self.bytes_transferred += len(chunk)
                        self.progress_bar.update(len(chunk))
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)
        except httpx.TimeoutException:
            logger.warning("Timeout while reading source stream")
            raise StreamTransportError("Timeout while reading source stream")
        except httpx.HTTPError as e:
            logger.error(f"Source stream failed after {self.bytes_transferred} bytes: {e}")
            raise StreamTransportError(f"Source stream failed: {e}")

    async def aclose(self):
        """
        Close the response and client. Safe to call more than once.
        """
        if self.closed:
            return
        self.closed = True
        if self.progress_bar:
            self.progress_bar.close()
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


class SourceFetcher:
    def __init__(self, policy: FetchPolicy, transport: typing.Optional[httpx.AsyncBaseTransport] = None):
        self.policy = policy
        self.transport = transport

    def _client(self, timeout: typing.Optional[float]) -> httpx.AsyncClient:
        return create_httpx_client(self.policy, timeout=timeout, transport=self.transport)

    async def probe(self, url: str) -> SourceInfo:
        """
        Issue a HEAD request to learn size, type and filename without downloading content.

        Args:
            url (str): The source URL.

        Returns:
            SourceInfo: Metadata extracted from the response headers.

        Raises:
            UpstreamFetchError: On timeout, transport failure, too many redirects or a status >= 400.
        """
        async with self._client(self.policy.probe_timeout) as client:
            try:
                # Deadline for the whole redirect chain; httpx timeouts apply per phase.
                with anyio.fail_after(self.policy.probe_timeout):
                    response = await client.head(url, headers=dict(self.policy.headers))
            except (httpx.TimeoutException, TimeoutError):
                logger.warning(f"Timeout while probing {url}")
                raise UpstreamFetchError(f"Timeout while probing {url}")
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.error(f"Error probing {url}: {e}")
                raise UpstreamFetchError(f"Error probing {url}: {e}")

        if response.status_code >= 400:
            logger.error(f"HTTP error {response.status_code} while probing {url}")
            raise UpstreamFetchError(f"HTTP error {response.status_code} while probing {url}")
        return SourceInfo.from_headers(response.headers)

    async def open(self, url: str) -> SourceStream:
        """
        Open the source body for streaming, with no timeout on the transfer.

        Args:
            url (str): The source URL.

        Returns:
            SourceStream: The open stream. The caller owns it and must close it.

        Raises:
            UpstreamFetchError: If the request fails or returns a status >= 400.
        """
        client = self._client(None)
        try:
            request = client.build_request("GET", url, headers=dict(self.policy.headers))
            response = await client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            await client.aclose()
            logger.error(f"Error opening source stream {url}: {e}")
            raise UpstreamFetchError(f"Error opening source stream: {e}")

        if response.status_code >= 400:
            await response.aclose()
            await client.aclose()
            logger.error(f"HTTP error {response.status_code} while opening source stream {url}")
            raise UpstreamFetchError(f"HTTP error {response.status_code} while opening source stream")

        return SourceStream(client, response, show_progress=self.policy.enable_streaming_progress)


class RelayStreamingResponse(Response):
    """
    Streaming response whose start message is held back until the first body chunk exists.

    Errors raised by the body iterator before that point become a regular error response.
    Afterwards the status can no longer change, so the connection is aborted instead.
    """

    body_iterator: typing.AsyncIterable[bytes]

    def __init__(
        self,
        content: typing.AsyncIterable[bytes],
        context: "RequestContext",
        error_handler: typing.Callable[[Exception], Response],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content
        self.context = context
        self.error_handler = error_handler
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0
        self.abort_error: typing.Optional[BaseException] = None

    async def listen_for_disconnect(self, receive: Receive) -> None:
        """
        Wait for the client to go away and record it on the request context.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.context.mark_disconnected()
                break

    async def send_error(self, exc: Exception, scope: Scope, receive: Receive, send: Send) -> None:
        if not self.context.client_connected:
            logger.info(f"Suppressed error after client disconnect: {exc}")
            return
        response = self.error_handler(exc)
        await response(scope, receive, send)

    async def stream_response(self, scope: Scope, receive: Receive, send: Send) -> None:
        iterator = self.body_iterator.__aiter__()
        try:
            first_chunk = await iterator.__anext__()
        except StopAsyncIteration:
            first_chunk = None
        except Exception as e:
            await self.send_error(e, scope, receive, send)
            return

        headers = [(k, v) for k, v in self.raw_headers if k.lower() != b"content-length"]
        await send({"type": "http.response.start", "status": self.status_code, "headers": headers})
        self.context.response_started = True

        try:
            if first_chunk:
                await send({"type": "http.response.body", "body": first_chunk, "more_body": True})
                self.actual_content_length += len(first_chunk)
                async for chunk in iterator:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                    self.actual_content_length += len(chunk)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info("Client disconnected during streaming")
            self.context.mark_disconnected()
        except Exception as e:
            if not self.context.client_connected:
                logger.info(f"Stream stopped after client disconnect: {e}")
                return
            logger.error(f"Aborting response after {self.actual_content_length} bytes: {e}")
            self.abort_error = e

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently, then always clean up.
        """
        try:
            async with anyio.create_task_group() as task_group:

                async def run_stream() -> None:
                    try:
                        await self.stream_response(scope, receive, send)
                    finally:
                        task_group.cancel_scope.cancel()

                task_group.start_soon(run_stream)
                await self.listen_for_disconnect(receive)
                task_group.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self.context.cleanup()

        if self.abort_error is not None:
            # Headers are already out; raising makes the server drop the connection.
            raise self.abort_error

        if self.background is not None:
            await self.background()
