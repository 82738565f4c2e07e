"""Tests for the image generation handler and the generateImage tool."""

import base64

import pytest
from mcp.types import ImageContent

import gemini_media_server as server
from gemini_media_server import (
    DEFAULT_IMAGE_PROMPT,
    EMPTY_IMAGE_MESSAGE,
    InlineBinary,
    MediaConfig,
    ResponsePart,
    generate_image_result,
)
from fakes import FakeMediaClient


def image_part(data):
    return ResponsePart(inline_data=InlineBinary(data=data, mime_type="image/png"))


class TestGenerateImageResult:
    """Tests for generate_image_result."""

    @pytest.mark.asyncio
    async def test_image_is_saved_and_returned(self, store):
        client = FakeMediaClient(parts=[ResponsePart(text="Here you go"), image_part(b"\x89PNG-data")])

        result = await generate_image_result(client, store, "a lighthouse at dusk", "16:9")

        assert isinstance(result, ImageContent)
        assert result.mimeType == "image/png"
        assert base64.b64decode(result.data) == b"\x89PNG-data"
        files = list(store.directory.iterdir())
        assert len(files) == 1
        assert files[0].name.startswith("gemini-image-")
        assert files[0].suffix == ".png"
        assert files[0].read_bytes() == b"\x89PNG-data"
        assert client.prompts == [("a lighthouse at dusk", "16:9")]

    @pytest.mark.asyncio
    async def test_output_format_drives_extension_and_mime_type(self, store):
        client = FakeMediaClient(parts=[image_part(b"jpeg-bytes")])

        result = await generate_image_result(client, store, "a fox", output_format="jpeg")

        assert result.mimeType == "image/jpeg"
        assert [f.suffix for f in store.directory.iterdir()] == [".jpeg"]

    @pytest.mark.asyncio
    async def test_last_image_is_used(self, store):
        client = FakeMediaClient(parts=[image_part(b"first"), image_part(b"second")])

        result = await generate_image_result(client, store, "two drafts")

        assert base64.b64decode(result.data) == b"second"

    @pytest.mark.asyncio
    async def test_text_only_response_returned_as_text(self, store):
        client = FakeMediaClient(parts=[ResponsePart(text="I can't draw that.")])

        result = await generate_image_result(client, store, "something refused")

        assert result == "I can't draw that."
        assert not store.directory.exists()

    @pytest.mark.asyncio
    async def test_empty_response(self, store):
        client = FakeMediaClient(parts=[])

        result = await generate_image_result(client, store, "anything")

        assert result == EMPTY_IMAGE_MESSAGE
        assert not store.directory.exists()

    @pytest.mark.asyncio
    async def test_errors_become_text(self, store):
        client = FakeMediaClient(parts=RuntimeError("service unavailable"))

        result = await generate_image_result(client, store, "anything")

        assert result.startswith("Error generating image:")
        assert "service unavailable" in result

    @pytest.mark.asyncio
    async def test_blank_prompt_uses_default(self, store):
        client = FakeMediaClient(parts=[])

        await generate_image_result(client, store, "")

        assert client.prompts[0][0] == DEFAULT_IMAGE_PROMPT


class TestGenerateImageTool:
    """Tests for the generateImage MCP tool."""

    @pytest.mark.asyncio
    async def test_defaults(self, monkeypatch, store):
        client = FakeMediaClient(parts=[image_part(b"img")])
        monkeypatch.setattr(server, "get_config", lambda: MediaConfig(api_key="k", output_dir=store.directory))
        monkeypatch.setattr(server, "get_media_client", lambda: client)
        monkeypatch.setattr(server, "get_artifact_store", lambda: store)

        result = await server.generateImage(prompt="a cat", aspectRatio=None, outputFormat=None)

        assert isinstance(result, ImageContent)
        assert result.mimeType == "image/png"
        assert client.prompts == [("a cat", "1:1")]
