"""
Transcoding engine lifecycle.

``TranscodePipeline.start`` spawns one ffmpeg process per request and wires a
source byte stream into its stdin. The returned ``TranscodeHandle`` exposes
the engine stdout as an async iterator and owns every resource involved:
the process, the source stream and three helper tasks:

* feeder: source -> stdin, awaiting ``drain()`` so a slow engine slows the fetch
* stderr reader: keeps a diagnostic tail and turns stats lines into progress events
* watcher: waits for exit and emits exactly one terminal event

``kill`` and ``aclose`` are idempotent and safe after natural completion.
"""

import asyncio
import logging
import re
import typing
from collections import deque

from mediashrink.configs import TranscodeProfile
from mediashrink.engine.events import (
    EngineFailed,
    EngineFinished,
    EngineStarted,
    EventListener,
    TranscodeEvent,
)
from mediashrink.engine.progress import parse_duration, parse_progress
from mediashrink.errors import EngineError, RelayError, StreamTransportError

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(rb"[\r\n]")
_STDERR_READ_SIZE = 4096


class ByteSource(typing.Protocol):
    def iter_bytes(self) -> typing.AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class TranscodeHandle:
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        source: ByteSource,
        command: typing.List[str],
        chunk_size: int,
        stderr_tail_lines: int,
        close_timeout: float,
        listener: typing.Optional[EventListener] = None,
    ):
        self.process = process
        self.source = source
        self.command = command
        self.chunk_size = chunk_size
        self.close_timeout = close_timeout
        self.listener = listener
        self.stderr_tail: typing.Deque[str] = deque(maxlen=stderr_tail_lines)
        self.duration: typing.Optional[float] = None
        self.failure: typing.Optional[RelayError] = None
        self.source_error: typing.Optional[StreamTransportError] = None
        self.killed = False
        self.closed = False
        self._done = asyncio.Event()
        self._feeder: typing.Optional[asyncio.Task] = None
        self._stderr_reader: typing.Optional[asyncio.Task] = None
        self._watcher: typing.Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> typing.Optional[int]:
        return self.process.returncode

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def start_tasks(self):
        self._feeder = asyncio.create_task(self._feed())
        self._stderr_reader = asyncio.create_task(self._read_stderr())
        self._watcher = asyncio.create_task(self._watch())

    def emit(self, event: TranscodeEvent):
        if self.listener is None:
            return
        try:
            self.listener(event)
        except Exception:
            logger.exception(f"Transcode event listener failed on {type(event).__name__}")

    async def _feed(self):
        stdin = self.process.stdin
        try:
            async for chunk in self.source.iter_bytes():
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"Engine {self.pid} stopped accepting input")
        except Exception as e:
            if isinstance(e, StreamTransportError):
                self.source_error = e
            else:
                self.source_error = StreamTransportError(f"Source stream failed: {e}")
            logger.error(f"Input stream error, stopping engine {self.pid}: {e}")
            self.kill()
        finally:
            if not stdin.is_closing():
                stdin.close()

    def _handle_stderr_line(self, line: str):
        if not line:
            return
        if self.duration is None:
            self.duration = parse_duration(line)

        progress = parse_progress(line, self.duration)
        if progress is None:
            self.stderr_tail.append(line)
            return
        self.emit(progress)

    async def _read_stderr(self):
        buffer = b""
        while True:
            data = await self.process.stderr.read(_STDERR_READ_SIZE)
            if not data:
                break
            buffer += data
            *lines, buffer = _LINE_SPLIT_RE.split(buffer)
            for raw in lines:
                self._handle_stderr_line(raw.decode("utf-8", errors="replace").strip())
        self._handle_stderr_line(buffer.decode("utf-8", errors="replace").strip())

    async def _watch(self):
        returncode = await self.process.wait()
        # stderr reaches EOF right after exit unless a child process still holds the pipe.
        await asyncio.wait({self._stderr_reader}, timeout=self.close_timeout)
        stderr = "\n".join(self.stderr_tail) or None

        if self.source_error is not None:
            self.failure = self.source_error
            self.emit(EngineFailed(f"Input stream error: {self.source_error.message}", stderr))
        elif returncode == 0:
            logger.info(f"Engine {self.pid} finished successfully")
            self.emit(EngineFinished())
        elif self.killed:
            self.failure = EngineError("Engine was killed with signal SIGKILL", stderr=stderr)
            self.emit(EngineFailed(self.failure.message, stderr))
        else:
            self.failure = EngineError(f"Engine exited with code {returncode}", stderr=stderr)
            self.emit(EngineFailed(self.failure.message, stderr))
        self._done.set()

    async def output(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Yield engine output in the order it is produced.

        Raises:
            StreamTransportError: If the source failed mid-transfer.
            EngineError: If the engine failed or was killed.
        """
        while True:
            chunk = await self.process.stdout.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

        await self._done.wait()
        if self.failure is not None:
            raise self.failure

    def kill(self):
        """
        Force the engine down with SIGKILL. No-op once it has exited or was already killed.
        """
        if self.killed or self.process.returncode is not None:
            return
        self.killed = True
        try:
            self.process.kill()
            logger.debug(f"Sent SIGKILL to engine {self.pid}")
        except ProcessLookupError:
            logger.debug(f"Engine {self.pid} already exited")
        except OSError as e:
            logger.warning(f"Failed to kill engine process {self.pid}: {e}")

    async def aclose(self):
        """
        Kill the engine, stop the helper tasks, reap the process and close the source.
        """
        if self.closed:
            return
        self.closed = True
        self.kill()

        tasks = [task for task in (self._feeder, self._stderr_reader, self._watcher) if task is not None]
        try:
            if self._feeder is not None:
                self._feeder.cancel()
            if self._watcher is not None:
                await asyncio.wait({self._watcher}, timeout=self.close_timeout)
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            try:
                await self.source.aclose()
            except Exception as e:
                logger.warning(f"Error closing source stream: {e}")


class TranscodePipeline:
    def __init__(
        self,
        profile: TranscodeProfile,
        chunk_size: int = 64 * 1024,
        stderr_tail_lines: int = 40,
        close_timeout: float = 5.0,
    ):
        self.profile = profile
        self.chunk_size = chunk_size
        self.stderr_tail_lines = stderr_tail_lines
        self.close_timeout = close_timeout

    async def start(self, source: ByteSource, listener: typing.Optional[EventListener] = None) -> TranscodeHandle:
        """
        Spawn the engine and begin feeding it from ``source``.

        Args:
            source (ByteSource): The input stream. The handle takes ownership and closes it.
            listener (EventListener, optional): Receives lifecycle events.

        Returns:
            TranscodeHandle: The running invocation.

        Raises:
            EngineError: If the engine executable cannot be started.
        """
        command = self.profile.build_args()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Could not start transcoding engine {command[0]!r}: {e}")
            await source.aclose()
            raise EngineError(f"Could not start transcoding engine: {e}")

        handle = TranscodeHandle(
            process,
            source,
            command,
            chunk_size=self.chunk_size,
            stderr_tail_lines=self.stderr_tail_lines,
            close_timeout=self.close_timeout,
            listener=listener,
        )
        handle.emit(EngineStarted(command))
        handle.start_tasks()
        return handle
