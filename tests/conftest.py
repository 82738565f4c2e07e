"""Shared fixtures for the media server tests."""

import httpx
import pytest

from gemini_media_server import ArtifactStore
from fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "out")


@pytest.fixture
def video_bytes():
    return b"\x00" * (1024 * 1024)


@pytest.fixture
def ok_download(video_bytes):
    return httpx.Response(200, content=video_bytes)
