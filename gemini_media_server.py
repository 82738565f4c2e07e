#!/usr/bin/env python3
"""
MCP Server for Gemini Media Generation.

Generates images with Gemini native image generation and videos with
Google Veo 3 (text-to-video and image-to-video) through the google-genai SDK.
Video requests run as long-running operations that are polled until done,
then downloaded and saved next to the server.
"""

import os
import sys
import json
import time
import base64
import asyncio
from pathlib import Path
from functools import lru_cache
from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, Sequence, Union

import httpx
from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field
from mcp.server.fastmcp import FastMCP
from mcp.types import ImageContent

# Initialize the MCP server
mcp = FastMCP("gemini_media_mcp")

# ============================================================================
# Constants
# ============================================================================

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_VIDEO_MODEL = "veo-3.0-generate-001"
FAST_VIDEO_MODEL = "veo-3.0-fast-generate-001"

DEFAULT_IMAGE_PROMPT = "Default image prompt"
DEFAULT_IMAGE_ASPECT_RATIO = "1:1"
DEFAULT_IMAGE_FORMAT = "png"
DEFAULT_VIDEO_ASPECT_RATIO = "9:16"

VIDEO_TIMEOUT_SECONDS = 5 * 60
POLL_INTERVAL_SECONDS = 10
DOWNLOAD_TIMEOUT_SECONDS = 120

# Response fields that may hold the generated samples, in lookup order.
SAMPLE_FIELDS = ("generatedSamples", "generatedVideos")
# The raw REST payload nests the samples one level down.
RESPONSE_WRAPPERS = ("generateVideoResponse",)

EMPTY_IMAGE_MESSAGE = "Image generation completed but the model returned neither an image nor text."


# ============================================================================
# Configuration
# ============================================================================

class MediaConfig(BaseModel):
    """Runtime settings for the Gemini client and the artifact store."""
    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = Field(default=None, repr=False)
    output_dir: Path = Field(default_factory=Path.cwd)
    image_model: str = DEFAULT_IMAGE_MODEL
    video_timeout_seconds: float = VIDEO_TIMEOUT_SECONDS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    download_timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "MediaConfig":
        """Build the config from the environment (and a .env file if present)."""
        load_dotenv()
        output_dir = os.environ.get("MEDIA_OUTPUT_DIR")
        return cls(
            api_key=os.environ.get("GEMINI_API_KEY") or None,
            output_dir=Path(output_dir) if output_dir else Path.cwd(),
            image_model=os.environ.get("GEMINI_IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
        )

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")
        return self.api_key


# ============================================================================
# Data Model
# ============================================================================

class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class SeedImage(FrozenModel):
    """First-frame image for image-to-video generation."""
    data: bytes
    mime_type: str


class GenerationRequest(FrozenModel):
    """One video generation request, built once per tool call."""
    prompt: str
    aspect_ratio: str
    model: str
    seed_image: Optional[SeedImage] = None


class Operation(FrozenModel):
    """Snapshot of a remote long-running operation.

    Every poll produces a new snapshot; ``response`` is the remote payload
    dumped with its camelCase field names.
    """
    name: str
    done: bool = False
    response: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None


class InlineBinary(FrozenModel):
    kind: Literal["inline"] = "inline"
    data: bytes
    mime_type: str


class Text(FrozenModel):
    kind: Literal["text"] = "text"
    content: str


class RemoteReference(FrozenModel):
    kind: Literal["remote"] = "remote"
    uri: str


ResultPayload = Union[InlineBinary, Text, RemoteReference]


class ResponsePart(FrozenModel):
    """One part of a content response; carries inline data or text, not both."""
    inline_data: Optional[InlineBinary] = None
    text: Optional[str] = None


class Success(FrozenModel):
    status: Literal["success"] = "success"
    file: str
    size_mb: str
    model: str
    aspect_ratio: str

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "file": self.file,
            "size_mb": self.size_mb,
            "model": self.model,
            "aspectRatio": self.aspect_ratio,
        }


class TimedOut(FrozenModel):
    status: Literal["timeout"] = "timeout"
    operation: str
    elapsed_ms: int

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "operation": self.operation,
            "elapsed_ms": self.elapsed_ms,
            "message": (
                f"Video generation timed out after {self.elapsed_ms // 1000}s. "
                f"Operation: {self.operation}"
            ),
        }


class EmptyResult(FrozenModel):
    status: Literal["empty_result"] = "empty_result"
    raw_response: Optional[dict[str, Any]] = None

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "message": "Video generation completed but no video was returned.",
            "response": self.raw_response,
        }


class Failure(FrozenModel):
    status: Literal["error"] = "error"
    reason: str

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "reason": self.reason,
            "message": f"Error generating video: {self.reason}",
        }


Outcome = Union[Success, TimedOut, EmptyResult, Failure]


def outcome_to_json(outcome: Outcome) -> str:
    return json.dumps(outcome.to_payload(), indent=2, ensure_ascii=False)


# ============================================================================
# Utility Functions
# ============================================================================

def _error_message(e: Exception) -> str:
    return str(e) or type(e).__name__


def _status_code(e: Exception) -> Optional[int]:
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code
    if isinstance(e, genai_errors.APIError):
        return e.code
    return None


def _handle_error(e: Exception, context: str = "") -> str:
    """Format errors consistently."""
    prefix = f"[{context}] " if context else ""
    message = _error_message(e)
    status = _status_code(e)

    if status is not None:
        if status == 401:
            return f"{prefix}Authentication failed (HTTP 401). Check GEMINI_API_KEY. {message}"
        elif status == 403:
            return f"{prefix}Access forbidden (HTTP 403). Check API permissions. {message}"
        elif status == 404:
            return f"{prefix}Resource not found (HTTP 404). {message}"
        elif status == 429:
            return f"{prefix}Rate limit exceeded (HTTP 429). Please wait before retrying. {message}"
        return f"{prefix}API request failed (HTTP {status}). {message}"

    elif isinstance(e, httpx.TimeoutException):
        return f"{prefix}Request timed out. {message}"

    elif isinstance(e, ValueError):
        return f"{prefix}{message}"

    return f"{prefix}{type(e).__name__} - {message}"


def append_api_key(uri: str, api_key: str) -> str:
    """Attach the API key as a query parameter to a download URI."""
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}key={api_key}"


def infer_image_mime_type(image_path: Union[str, Path]) -> str:
    ext = Path(image_path).suffix.lower()
    return "image/jpeg" if ext in (".jpg", ".jpeg") else "image/png"


def load_seed_image(image_path: Optional[str]) -> Optional[SeedImage]:
    """Read a first-frame image; a missing path means text-to-video."""
    if not image_path:
        return None
    path = Path(image_path)
    if not path.is_file():
        return None
    return SeedImage(data=path.read_bytes(), mime_type=infer_image_mime_type(path))


def build_video_request(
    prompt: str,
    aspect_ratio: str = DEFAULT_VIDEO_ASPECT_RATIO,
    model: str = DEFAULT_VIDEO_MODEL,
    image_path: Optional[str] = None
) -> GenerationRequest:
    seed_image = load_seed_image(image_path)
    if seed_image is not None:
        print(f"[Veo] Using image as first frame: {image_path}", file=sys.stderr)
    return GenerationRequest(
        prompt=prompt,
        aspect_ratio=aspect_ratio,
        model=model,
        seed_image=seed_image,
    )


# ============================================================================
# Result Extraction
# ============================================================================

def extract_result(parts: Sequence[ResponsePart]) -> Optional[ResultPayload]:
    """Pick the authoritative result from a content response.

    The last inline binary part wins; failing that, the last non-empty text
    part; failing that, None.
    """
    image = None
    text = None
    for part in parts:
        if part.inline_data is not None:
            image = part.inline_data
        elif part.text:
            text = Text(content=part.text)

    if image is not None:
        return image
    return text


def find_generated_samples(response: Optional[dict]) -> list:
    """Return the first non-empty sample list found under SAMPLE_FIELDS."""
    if not response:
        return []

    containers = [response]
    for wrapper in RESPONSE_WRAPPERS:
        nested = response.get(wrapper)
        if isinstance(nested, dict):
            containers.append(nested)

    for container in containers:
        for field in SAMPLE_FIELDS:
            samples = container.get(field)
            if samples:
                return list(samples)
    return []


def extract_video_reference(response: Optional[dict]) -> Optional[RemoteReference]:
    samples = find_generated_samples(response)
    if not samples:
        return None
    video = (samples[0] or {}).get("video") or {}
    uri = video.get("uri")
    return RemoteReference(uri=uri) if uri else None


# ============================================================================
# Artifact Storage
# ============================================================================

def artifact_filename(prefix: str, extension: str, now: Optional[float] = None) -> str:
    """Generate a unique filename from the epoch time in milliseconds."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{prefix}-{millis}.{extension}"


class ArtifactStore:
    """Writes generated media into a local directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def save(self, data: bytes, filename: str) -> Path:
        """Write ``data`` in one go and return the absolute path."""
        self.directory.mkdir(parents=True, exist_ok=True)
        filepath = (self.directory / filename).resolve()
        filepath.write_bytes(data)
        return filepath


# ============================================================================
# Gemini API Client
# ============================================================================

def _response_parts(response: types.GenerateContentResponse) -> list[ResponsePart]:
    candidates = response.candidates or []
    if not candidates or candidates[0].content is None:
        return []

    parts = []
    for part in candidates[0].content.parts or []:
        if part.inline_data is not None and part.inline_data.data is not None:
            parts.append(ResponsePart(inline_data=InlineBinary(
                data=part.inline_data.data,
                mime_type=part.inline_data.mime_type or "image/png",
            )))
        elif part.text is not None:
            parts.append(ResponsePart(text=part.text))
    return parts


def _to_operation(operation: types.GenerateVideosOperation) -> Operation:
    response = None
    if operation.response is not None:
        response = operation.response.model_dump(mode="json", by_alias=True, exclude_none=True)
    return Operation(
        name=operation.name or "",
        done=bool(operation.done),
        response=response,
        error=operation.error,
    )


class GeminiMediaClient:
    """Typed facade over the google-genai SDK and the video download."""

    def __init__(self, config: MediaConfig, client: Optional[genai.Client] = None):
        self.config = config
        self._client = client

    @property
    def sdk(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.config.require_api_key())
        return self._client

    async def generate_content_parts(
        self,
        prompt: str,
        aspect_ratio: str = DEFAULT_IMAGE_ASPECT_RATIO
    ) -> list[ResponsePart]:
        """Run one synchronous text+image generation and normalize its parts."""
        response = await self.sdk.aio.models.generate_content(
            model=self.config.image_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        return _response_parts(response)

    async def submit_video(self, request: GenerationRequest) -> Operation:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "config": types.GenerateVideosConfig(aspect_ratio=request.aspect_ratio),
        }
        if request.seed_image is not None:
            # The SDK base64-encodes image_bytes on the wire.
            kwargs["image"] = types.Image(
                image_bytes=request.seed_image.data,
                mime_type=request.seed_image.mime_type,
            )
        operation = await self.sdk.aio.models.generate_videos(**kwargs)
        return _to_operation(operation)

    async def get_video_operation(self, name: str) -> Operation:
        operation = await self.sdk.aio.operations.get(types.GenerateVideosOperation(name=name))
        return _to_operation(operation)

    def download_url(self, uri: str) -> str:
        return append_api_key(uri, self.config.require_api_key())

    async def download(self, uri: str) -> httpx.Response:
        """Fetch a generated artifact; the caller checks the status."""
        url = self.download_url(uri)
        async with httpx.AsyncClient(timeout=self.config.download_timeout_seconds, follow_redirects=True) as client:
            return await client.get(url)


# ============================================================================
# Video Operation Orchestration
# ============================================================================

class VideoOrchestrator:
    """Drives one Veo request from submission to a saved file.

    Submits the request, polls the operation every ``poll_interval_seconds``
    until it is done or ``timeout_seconds`` have elapsed, downloads the first
    generated sample and saves it through the artifact store. Every failure
    is returned as an Outcome; nothing is raised to the caller.
    """

    def __init__(
        self,
        client: GeminiMediaClient,
        store: ArtifactStore,
        timeout_seconds: float = VIDEO_TIMEOUT_SECONDS,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.client = client
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self.sleep = sleep

    async def generate(
        self,
        prompt: str,
        aspect_ratio: str = DEFAULT_VIDEO_ASPECT_RATIO,
        model: str = DEFAULT_VIDEO_MODEL,
        image_path: Optional[str] = None
    ) -> Outcome:
        """Build the request from tool parameters and run it."""
        try:
            request = build_video_request(prompt, aspect_ratio, model, image_path)
        except Exception as e:
            return self._failure(e)
        return await self.run(request)

    async def run(self, request: GenerationRequest) -> Outcome:
        try:
            return await self._execute(request)
        except Exception as e:
            return self._failure(e)

    async def _execute(self, request: GenerationRequest) -> Outcome:
        print(f"[Veo] Starting video generation: model={request.model}, aspect={request.aspect_ratio}", file=sys.stderr)
        print(f"[Veo] Prompt: {request.prompt}", file=sys.stderr)

        operation = await self.client.submit_video(request)
        print("[Veo] Operation started, polling for completion...", file=sys.stderr)

        result = await self.wait_for_completion(operation)
        if isinstance(result, TimedOut):
            print(f"[Veo] Timed out waiting for {result.operation}", file=sys.stderr)
            return result

        print("[Veo] Generation complete!", file=sys.stderr)
        if result.error:
            return Failure(reason=result.error.get("message") or json.dumps(result.error))

        reference = extract_video_reference(result.response)
        if reference is None:
            return EmptyResult(raw_response=result.response)

        return await self.download_and_persist(reference, request)

    async def wait_for_completion(self, operation: Operation) -> Union[Operation, TimedOut]:
        """Poll until the operation is done or the timeout budget is spent.

        The deadline is checked before each sleep, so the wait can overrun
        ``timeout_seconds`` by at most one poll interval.
        """
        start = self.clock()
        while not operation.done:
            elapsed = self.clock() - start
            if elapsed > self.timeout_seconds:
                return TimedOut(operation=operation.name, elapsed_ms=int(elapsed * 1000))
            print(f"[Veo] Waiting... ({round(elapsed)}s elapsed)", file=sys.stderr)
            await self.sleep(self.poll_interval_seconds)
            operation = await self.client.get_video_operation(operation.name)
        return operation

    async def download_and_persist(self, reference: RemoteReference, request: GenerationRequest) -> Outcome:
        print("[Veo] Downloading video...", file=sys.stderr)
        response = await self.client.download(reference.uri)
        if not response.is_success:
            return Failure(reason=f"Failed to download video: {response.status_code} {response.reason_phrase}")

        content = response.content
        filepath = self.store.save(content, artifact_filename("gemini-video", "mp4"))
        size_mb = f"{len(content) / 1024 / 1024:.1f}"
        print(f"[Veo] Video saved as {filepath.name} ({size_mb} MB)", file=sys.stderr)

        return Success(
            file=str(filepath),
            size_mb=size_mb,
            model=request.model,
            aspect_ratio=request.aspect_ratio,
        )

    def _failure(self, e: Exception) -> Failure:
        print(f"[Veo] Error: {e!r}", file=sys.stderr)
        return Failure(reason=_handle_error(e))


# ============================================================================
# Image Generation
# ============================================================================

async def generate_image_result(
    client: GeminiMediaClient,
    store: ArtifactStore,
    prompt: str,
    aspect_ratio: str = DEFAULT_IMAGE_ASPECT_RATIO,
    output_format: str = DEFAULT_IMAGE_FORMAT
) -> Union[ImageContent, str]:
    """Generate one image; fall back to the model's text when it declines."""
    prompt = prompt or DEFAULT_IMAGE_PROMPT

    try:
        parts = await client.generate_content_parts(prompt, aspect_ratio)
        result = extract_result(parts)

        if isinstance(result, InlineBinary):
            filepath = store.save(result.data, artifact_filename("gemini-image", output_format))
            print(f"[Image] Image saved as {filepath.name}", file=sys.stderr)
            return ImageContent(
                type="image",
                data=base64.b64encode(result.data).decode("ascii"),
                mimeType=f"image/{output_format}",
            )

        if isinstance(result, Text):
            print(f"[Image] No image generated, text response: {result.content}", file=sys.stderr)
            return result.content

        print("[Image] Empty response from model", file=sys.stderr)
        return EMPTY_IMAGE_MESSAGE

    except Exception as e:
        print(f"[Image] Image generation error: {e!r}", file=sys.stderr)
        return f"Error generating image: {_handle_error(e)}"


# ============================================================================
# Shared Services
# ============================================================================

@lru_cache(maxsize=1)
def get_config() -> MediaConfig:
    return MediaConfig.from_env()


@lru_cache(maxsize=1)
def get_media_client() -> GeminiMediaClient:
    return GeminiMediaClient(get_config())


@lru_cache(maxsize=1)
def get_artifact_store() -> ArtifactStore:
    return ArtifactStore(get_config().output_dir)


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool(
    name="generateImage",
    annotations={
        "title": "Generate Image from Text",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True
    },
    structured_output=False,
)
async def generateImage(
    prompt: Annotated[str, Field(description="Text description of the image to generate")],
    aspectRatio: Annotated[Optional[str], Field(description="Aspect ratio (e.g., '1:1', '4:3', '16:9')")] = DEFAULT_IMAGE_ASPECT_RATIO,
    outputFormat: Annotated[Optional[str], Field(description="Output format ('png' or 'jpeg')")] = DEFAULT_IMAGE_FORMAT,
) -> Union[ImageContent, str]:
    """Generate an image using Gemini native image generation.

    The image is saved as gemini-image-<timestamp>.<format> in the output
    directory and returned as image content. When the model declines to draw
    it usually explains why; that explanation is returned as text.
    """
    return await generate_image_result(
        get_media_client(),
        get_artifact_store(),
        prompt,
        aspect_ratio=aspectRatio or DEFAULT_IMAGE_ASPECT_RATIO,
        output_format=outputFormat or DEFAULT_IMAGE_FORMAT,
    )


@mcp.tool(
    name="generateVideo",
    annotations={
        "title": "Generate Video with Veo 3",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True
    }
)
async def generateVideo(
    prompt: Annotated[str, Field(description="Text description of the video to generate")],
    aspectRatio: Annotated[Optional[str], Field(description="Aspect ratio: '9:16' (portrait, default) or '16:9' (landscape)")] = DEFAULT_VIDEO_ASPECT_RATIO,
    model: Annotated[Optional[str], Field(description=f"Model ID: '{DEFAULT_VIDEO_MODEL}' (default) or '{FAST_VIDEO_MODEL}' (faster/cheaper)")] = DEFAULT_VIDEO_MODEL,
    imagePath: Annotated[Optional[str], Field(description="Optional path to an image file to use as the first frame (image-to-video)")] = None,
) -> str:
    """Generate a video using Google Veo 3. Supports text-to-video and image-to-video.

    Generation is asynchronous on Google's side and usually takes 1-3 minutes;
    the call waits up to 5 minutes.

    Returns:
        str: JSON with status 'success' (file, size_mb, model, aspectRatio),
        'timeout', 'empty_result' or 'error'.
    """
    config = get_config()
    orchestrator = VideoOrchestrator(
        get_media_client(),
        get_artifact_store(),
        timeout_seconds=config.video_timeout_seconds,
        poll_interval_seconds=config.poll_interval_seconds,
    )
    outcome = await orchestrator.generate(
        prompt,
        aspect_ratio=aspectRatio or DEFAULT_VIDEO_ASPECT_RATIO,
        model=model or DEFAULT_VIDEO_MODEL,
        image_path=imagePath,
    )
    return outcome_to_json(outcome)


# ============================================================================
# Server Entry Point
# ============================================================================

def main():
    """Entry point for the MCP server."""
    print("Gemini Media Server running (Gemini image + Veo 3)", file=sys.stderr)
    mcp.run()


if __name__ == "__main__":
    main()
