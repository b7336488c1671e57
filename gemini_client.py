# gemini_client.py
import asyncio
import base64
from typing import Callable, Optional

import httpx

from exceptions import EmptyGenerationResult, TransportFailure
from logging_config import get_logger
from request_builder import GenerationRequest, ImagePart, TextPart
from settings import settings

logger = get_logger("gemini_client")

# Video models and ratios accepted by the bulk pipeline
VIDEO_MODELS = ("veo-3.1-fast-generate-preview", "veo-3.1-generate-preview")
ASPECT_RATIOS = ("16:9", "9:16", "1:1", "4:3", "3:4")
VIDEO_RESOLUTION = "720p"

ProgressCallback = Callable[[str], None]


def _check(r: httpx.Response, what: str) -> None:
    if r.status_code >= 300:
        raise TransportFailure(f"{what} failed: {r.status_code} {r.text}")


def _part_payload(part) -> dict:
    if isinstance(part, TextPart):
        return {"text": part.text}
    return {
        "inline_data": {
            "mime_type": part.mime_type,
            "data": base64.b64encode(part.data).decode("ascii"),
        }
    }


class GeminiClient:
    """
    REST client for the Gemini image model and the Veo video models.

    transport is handed to httpx.AsyncClient; tests pass an httpx.MockTransport.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        image_model: Optional[str] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.base_url = (base_url or settings.gemini_api_base).rstrip("/")
        self.image_model = image_model or settings.image_model
        self.poll_interval = settings.video_poll_interval_sec if poll_interval is None else poll_interval
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise TransportFailure("GEMINI_API_KEY not set")
        return {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        # no timeout: a generation call runs as long as the API takes
        return httpx.AsyncClient(
            timeout=None,
            headers=self._headers(),
            follow_redirects=True,
            transport=self._transport,
        )

    # ---------- Image mode ----------
    async def generate_image(self, request: GenerationRequest) -> ImagePart:
        """Send the ordered parts to the image model and return the first image it produces."""
        body = {"contents": [{"parts": [_part_payload(p) for p in request.parts]}]}
        url = f"{self.base_url}/models/{self.image_model}:generateContent"
        logger.debug(f"generateContent for scene {request.scene_id}: {len(request.parts)} parts")

        try:
            async with self._client() as client:
                r = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise TransportFailure(str(e) or type(e).__name__) from e
        _check(r, "image generation")

        data = r.json()
        candidates = data.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    return ImagePart(
                        data=base64.b64decode(inline["data"]),
                        mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    )
        raise EmptyGenerationResult("API returned no image.")

    # ---------- Video mode ----------
    async def _start_video(self, client: httpx.AsyncClient, prompt: str, model: str,
                           aspect_ratio: str, image: Optional[ImagePart]) -> str:
        instance = {"prompt": prompt}
        if image is not None:
            instance["image"] = {
                "bytesBase64Encoded": base64.b64encode(image.data).decode("ascii"),
                "mimeType": image.mime_type,
            }
        payload = {
            "instances": [instance],
            "parameters": {
                "aspectRatio": aspect_ratio,
                "resolution": VIDEO_RESOLUTION,
                "sampleCount": 1,
            },
        }
        r = await client.post(f"{self.base_url}/models/{model}:predictLongRunning", json=payload)
        _check(r, "video request")
        name = r.json().get("name")
        if not name:
            raise EmptyGenerationResult("Video generation failed: no operation returned.")
        return name

    async def _wait_for_operation(self, client: httpx.AsyncClient, name: str,
                                  on_progress: ProgressCallback) -> str:
        """
        Poll the long-running operation until done and return the video URI.
        """
        while True:
            await asyncio.sleep(self.poll_interval)
            r = await client.get(f"{self.base_url}/{name}")
            _check(r, "operation status")
            on_progress("Processing video generation (polling status)...")
            data = r.json()
            if not data.get("done"):
                continue
            if data.get("error"):
                message = data["error"].get("message") or str(data["error"])
                raise TransportFailure(f"Video generation failed: {message}")
            samples = (
                (data.get("response") or {})
                .get("generateVideoResponse", {})
                .get("generatedSamples") or []
            )
            uri = samples[0].get("video", {}).get("uri") if samples else None
            if not uri:
                raise EmptyGenerationResult(
                    "Video generation failed: No download link returned from operation."
                )
            return uri

    async def generate_video(
        self,
        prompt: str,
        model: str,
        aspect_ratio: str,
        image: Optional[ImagePart] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """
        High-level: start the operation, poll until done, download the MP4, return bytes.
        """
        progress = on_progress or (lambda _msg: None)
        progress("Initializing generation...")
        try:
            async with self._client() as client:
                progress("Requesting video generation...")
                name = await self._start_video(client, prompt, model, aspect_ratio, image)
                logger.info(f"Video operation started: {name}")
                uri = await self._wait_for_operation(client, name, progress)
                resp = await client.get(uri)
                if resp.status_code >= 300:
                    raise TransportFailure(
                        f"Failed to fetch video from download link: {resp.status_code} {resp.reason_phrase}"
                    )
                return resp.content
        except httpx.HTTPError as e:
            raise TransportFailure(str(e) or type(e).__name__) from e
