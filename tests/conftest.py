"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. Environment is pinned before any app module
is imported, since settings are read at import time.
"""

import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOCAL_DIR"] = tempfile.mkdtemp(prefix="storyreel-test-")
os.environ["STORAGE"] = "local"
os.environ["GEMINI_API_KEY"] = "test-key"
os.environ["DEBUG"] = "true"

import asyncio

import pytest

from exceptions import TransportFailure
from job_store import JobDraft, JobStore, make_engine
from reference_store import Character, CharacterImage, ReferenceStore
from request_builder import ImagePart


class MemoryStorage:
    """Storage double keeping renders in a dict."""

    def __init__(self):
        self.files = {}

    def save(self, data: bytes, key: str, content_type: str) -> str:
        url = f"mem://{key}"
        self.files[url] = data
        return url

    async def load(self, url: str) -> bytes:
        if url not in self.files:
            raise FileNotFoundError(url)
        return self.files[url]


class RecordingImageGateway:
    """Image gateway double: records requests, renders bytes naming the scene."""

    def __init__(self):
        self.requests = []
        self.fail_scene_ids = set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate_image(self, request):
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if request.scene_id in self.fail_scene_ids:
                raise TransportFailure("503 Service Unavailable")
            return ImagePart(data=f"render:{request.scene_id}".encode(), mime_type="image/png")
        finally:
            self.in_flight -= 1


class GatedVideoGateway:
    """Video gateway double: each prompt blocks until its gate is opened."""

    def __init__(self):
        self.gates = {}
        self.calls = []
        self.fail_prompts = set()
        self.open = False
        self.in_flight = 0
        self.max_in_flight = 0

    def gate(self, prompt: str) -> asyncio.Event:
        return self.gates.setdefault(prompt, asyncio.Event())

    def release(self, prompt: str) -> None:
        self.gate(prompt).set()

    def release_all(self) -> None:
        """Open every gate, including those of calls not made yet."""
        self.open = True
        for gate in self.gates.values():
            gate.set()

    async def generate_video(self, prompt, model, aspect_ratio, image=None, on_progress=None):
        self.calls.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if on_progress:
                on_progress("Requesting video generation...")
            if not self.open:
                await self.gate(prompt).wait()
            if prompt in self.fail_prompts:
                raise TransportFailure(f"video request failed: 500 {prompt}")
            return f"video:{prompt}".encode()
        finally:
            self.in_flight -= 1


async def _settle(ticks: int = 25) -> None:
    for _ in range(ticks):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Coroutine that lets scheduled tasks run until they block again."""
    return _settle


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def image_gateway():
    return RecordingImageGateway()


@pytest.fixture
def video_gateway():
    return GatedVideoGateway()


@pytest.fixture
def job_store():
    store = JobStore(make_engine("sqlite://"))
    store.init_db()
    return store


@pytest.fixture
def draft():
    def _draft(prompt: str = "a neon hologram of a cat", **overrides) -> JobDraft:
        fields = {
            "prompt": prompt,
            "model": "veo-3.1-fast-generate-preview",
            "aspect_ratio": "16:9",
        }
        fields.update(overrides)
        return JobDraft(**fields)
    return _draft


@pytest.fixture
def characters():
    return [
        Character(
            id="hero",
            name="Mira",
            style_description="red scarf, short silver hair",
            images=[
                CharacterImage(id="h1", data=b"mira-front", mime_type="image/png"),
                CharacterImage(id="h2", data=b"mira-side", mime_type="image/jpeg"),
            ],
            is_default=True,
        ),
        Character(
            id="fox",
            name="Kit",
            style_description="small orange fox",
            images=[CharacterImage(id="f1", data=b"kit-front", mime_type="image/png")],
        ),
        Character(id="extra", name="Character 3"),
    ]


@pytest.fixture
def reference_store(characters):
    return ReferenceStore(characters=characters)
