import asyncio

import pytest

from mediashrink.configs import TranscodeProfile
from mediashrink.engine import EngineFailed, EngineFinished, EngineProgress, EngineStarted
from mediashrink.engine.pipeline import TranscodePipeline
from mediashrink.errors import EngineError, StreamTransportError

FAILING_ENGINE = 'echo "pipe:0: Invalid data found when processing input" >&2\nexit 1\n'


def test_profile_renders_fixed_command_line():
    args = TranscodeProfile().build_args()

    assert args[0] == "ffmpeg"
    assert args[args.index("-i") + 1] == "pipe:0"
    assert args[-1] == "pipe:1"
    rendered = " ".join(args)
    for expected in (
        "-c:v libx264",
        "-c:a aac",
        "-vf scale=854:480",
        "-preset fast",
        "-threads 2",
        "-crf 30",
        "-maxrate 1000k",
        "-bufsize 1500k",
        "-movflags frag_keyframe+empty_moov+faststart",
        "-g 30",
        "-sc_threshold 0",
        "-tune fastdecode",
        "-f mp4",
    ):
        assert expected in rendered


@pytest.mark.asyncio
async def test_output_relays_engine_stdout_in_order(make_pipeline, make_source):
    source = make_source([b"alpha-", b"beta-", b"gamma"])
    events = []
    handle = await make_pipeline().start(source, listener=events.append)

    output = b"".join([chunk async for chunk in handle.output()])
    await handle.aclose()

    assert output == b"alpha-beta-gamma"
    assert handle.returncode == 0
    assert isinstance(events[0], EngineStarted)
    assert events[0].command[-1] == "pipe:1"
    assert isinstance(events[-1], EngineFinished)
    assert source.close_calls == 1


@pytest.mark.asyncio
async def test_engine_failure_carries_diagnostics(make_pipeline, make_source):
    events = []
    handle = await make_pipeline(FAILING_ENGINE).start(make_source([b"data"]), listener=events.append)

    with pytest.raises(EngineError) as exc_info:
        async for _ in handle.output():
            pass
    await handle.aclose()

    assert "exited with code 1" in exc_info.value.message
    assert "Invalid data found" in exc_info.value.stderr
    failed = [event for event in events if isinstance(event, EngineFailed)]
    assert len(failed) == 1
    assert "Invalid data found" in failed[0].stderr


@pytest.mark.asyncio
async def test_missing_engine_raises_engine_error(tmp_path, make_source):
    source = make_source([b"data"])
    pipeline = TranscodePipeline(TranscodeProfile(engine_path=str(tmp_path / "no-such-ffmpeg")))

    with pytest.raises(EngineError):
        await pipeline.start(source)
    assert source.close_calls == 1


@pytest.mark.asyncio
async def test_source_error_stops_engine(make_pipeline, make_source):
    source = make_source([b"x" * 512], delay=0.01, error=StreamTransportError("Source stream failed: reset"))
    events = []
    handle = await make_pipeline().start(source, listener=events.append)

    with pytest.raises(StreamTransportError):
        async for _ in handle.output():
            pass
    await handle.aclose()

    assert handle.killed
    assert any(isinstance(event, EngineFailed) and "Input stream error" in event.message for event in events)


@pytest.mark.asyncio
async def test_kill_is_idempotent(make_pipeline, make_source):
    handle = await make_pipeline().start(make_source([b"x"], delay=0.05, forever=True))

    handle.kill()
    handle.kill()
    await asyncio.wait_for(handle.process.wait(), timeout=5)
    handle.kill()
    await handle.aclose()
    await handle.aclose()

    assert handle.killed
    assert handle.returncode is not None and handle.returncode < 0


@pytest.mark.asyncio
async def test_kill_after_completion_is_noop(make_pipeline, make_source):
    handle = await make_pipeline().start(make_source([b"done"]))
    async for _ in handle.output():
        pass

    handle.kill()
    await handle.aclose()

    assert not handle.killed
    assert handle.returncode == 0


@pytest.mark.asyncio
async def test_killed_engine_reports_failure(make_pipeline, make_source):
    events = []
    handle = await make_pipeline().start(make_source([b"x"], delay=0.05, forever=True), listener=events.append)

    handle.kill()
    with pytest.raises(EngineError, match="killed"):
        async for _ in handle.output():
            pass
    await handle.aclose()

    assert isinstance(events[-1], EngineFailed)


@pytest.mark.asyncio
async def test_progress_samples_and_malformed_lines(make_pipeline, make_source):
    engine = (
        "printf 'Duration: 00:00:10.00, start: 0.000000\\n' >&2\n"
        "printf 'frame=   10 fps=0.0 q=28.0 size=0kB time=00:00:05.00 bitrate=N/A\\r' >&2\n"
        "printf 'frame=garbage time=bogus\\r' >&2\n"
        "printf 'frame=   20 fps=0.0 q=28.0 size=0kB time=N/A bitrate=N/A\\n' >&2\n"
        "exec cat\n"
    )
    events = []
    handle = await make_pipeline(engine).start(make_source([b"payload"]), listener=events.append)

    output = b"".join([chunk async for chunk in handle.output()])
    await handle.aclose()

    progress = [event for event in events if isinstance(event, EngineProgress)]
    assert output == b"payload"
    assert progress[0] == EngineProgress(percent=50.0, processed_seconds=5.0, frames=10)
    assert progress[1] == EngineProgress(percent=None, processed_seconds=None, frames=20)
    assert isinstance(events[-1], EngineFinished)


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_pipeline(make_pipeline, make_source):
    def explode(event):
        raise ValueError("listener bug")

    handle = await make_pipeline().start(make_source([b"still works"]), listener=explode)
    output = b"".join([chunk async for chunk in handle.output()])
    await handle.aclose()

    assert output == b"still works"
