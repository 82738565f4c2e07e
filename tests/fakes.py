"""Fakes for the Gemini media client and the poll-loop clock."""

from gemini_media_server import Operation


class FakeClock:
    """Monotonic clock that only moves when the orchestrator sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeMediaClient:
    """Stands in for GeminiMediaClient.

    ``snapshots[0]`` is returned by the submission, later entries by
    successive polls (the last one repeats).
    """

    def __init__(self, snapshots=None, download_response=None, parts=None, submit_error=None):
        self.snapshots = list(snapshots or [Operation(name="operations/1", done=True)])
        self.download_response = download_response
        self.parts = parts or []
        self.submit_error = submit_error
        self.submitted = []
        self.polled = []
        self.downloaded = []
        self.prompts = []

    async def submit_video(self, request):
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return self.snapshots[0]

    async def get_video_operation(self, name):
        self.polled.append(name)
        index = min(len(self.polled), len(self.snapshots) - 1)
        return self.snapshots[index]

    async def download(self, uri):
        self.downloaded.append(uri)
        return self.download_response

    async def generate_content_parts(self, prompt, aspect_ratio="1:1"):
        self.prompts.append((prompt, aspect_ratio))
        if isinstance(self.parts, Exception):
            raise self.parts
        return self.parts


def done_operation(uri="https://example.com/files/video.mp4", field="generatedVideos"):
    return Operation(
        name="operations/1",
        done=True,
        response={field: [{"video": {"uri": uri}}]},
    )


