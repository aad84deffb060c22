"""
Pytest configuration for the compression relay tests.

Engines are replaced by tiny shell scripts written to ``tmp_path`` so the
lifecycle can be exercised without FFmpeg. Tests that need the real encoder
skip when it is not installed. The optional live test reads its source URL
from the environment; locally, add it to your .env file.
"""

import asyncio
import dataclasses
import os
import stat
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv

from mediashrink.configs import TranscodeProfile, settings
from mediashrink.engine.pipeline import TranscodePipeline
from mediashrink.utils.http_utils import FetchPolicy, SourceFetcher

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

ECHO_ENGINE = "exec cat\n"


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def make_engine(tmp_path):
    """
    Factory fixture writing an executable shell script that stands in for the engine.

    Usage:
        def test_something(make_engine):
            profile = make_engine("exec cat\\n")
    """

    def _make(body: str, name: str = "engine.sh") -> TranscodeProfile:
        script = tmp_path / name
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return TranscodeProfile(engine_path=str(script))

    return _make


@pytest.fixture
def make_pipeline(make_engine):
    def _make(body: str = ECHO_ENGINE) -> TranscodePipeline:
        return TranscodePipeline(make_engine(body), chunk_size=1024, stderr_tail_lines=10, close_timeout=2.0)

    return _make


class FakeSource:
    """In-memory byte source that records how much was read and whether it was closed."""

    def __init__(self, chunks=(), delay=0.0, forever=False, error=None):
        self.chunks = list(chunks)
        self.delay = delay
        self.forever = forever
        self.error = error
        self.reads = 0
        self.close_calls = 0

    async def iter_bytes(self):
        index = 0
        while self.forever or index < len(self.chunks):
            if self.delay:
                await asyncio.sleep(self.delay)
            chunk = self.chunks[index % len(self.chunks)]
            index += 1
            self.reads += 1
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.close_calls += 1


@pytest.fixture
def make_source():
    return FakeSource


class SourceServer:
    """Records requests to a mocked source and answers HEAD/GET from configurable callables."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.head = lambda request: httpx.Response(200, headers={"content-length": "1000"})
        self.get = lambda request: httpx.Response(200, content=b"\x00" * 1000)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            return self.head(request)
        return self.get(request)

    def fetcher(self, **policy_overrides) -> SourceFetcher:
        policy = dataclasses.replace(FetchPolicy.from_settings(settings), **policy_overrides)
        return SourceFetcher(policy, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def source_server():
    return SourceServer()


@pytest.fixture
def get_test_url():
    def _get_url(name: str) -> str | None:
        return os.environ.get(f"TEST_{name.upper()}_URL")

    return _get_url
