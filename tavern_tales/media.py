"""Speech and image generation clients.

Both are optional enrichments of a story entry: every failure is logged and
reported as ``None``, never raised, so a slow or broken media service cannot
affect a turn.
"""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

MIN_SPEECH_CHARS = 10
MAX_IMAGE_PROMPT = 1000
IMAGE_STYLE = (
    "fantasy digital art, atmospheric lighting, medieval style, peaceful scene, "
    "high quality, artistic illustration, fantasy environment"
)
SAFE_IMAGE_PROMPT = (
    "Medieval fantasy tavern interior, warm candlelight, wooden furniture, "
    "peaceful atmosphere, digital art"
)


class SpeechClient(Protocol):
    async def synthesize(self, text: str) -> str | None: ...


class ImageClient(Protocol):
    async def generate(self, prompt: str) -> str | None: ...


def clean_speech_text(text: str) -> str:
    """Drop *stage directions* and (asides), collapse whitespace."""
    text = re.sub(r"\*[^*]*\*", "", text or "")
    text = re.sub(r"\([^)]*\)", "", text)
    return re.sub(r"\s+", " ", text).strip()


def build_image_prompt(scene: str) -> str:
    prompt = f"{scene}, {IMAGE_STYLE}"
    if len(prompt) > MAX_IMAGE_PROMPT:
        prompt = prompt[:MAX_IMAGE_PROMPT - 3] + "..."
    return prompt


class HttpSpeechClient:
    """ElevenLabs text-to-speech. Audio is written under ``media_dir``.

    Returns the file name of the stored clip, relative to ``media_dir``.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        voice_id: str,
        media_dir: Path,
        model_id: str = "eleven_monolingual_v1",
        timeout: float = 60.0,
    ) -> None:
        self._base_url = api_url.rstrip("/")
        self._api_key = api_key
        self._voice_id = voice_id
        self._media_dir = media_dir
        self._model_id = model_id
        self._timeout = timeout

    async def synthesize(self, text: str) -> str | None:
        clean = clean_speech_text(text)
        if len(clean) < MIN_SPEECH_CHARS:
            logger.debug("Speech skipped: text too short (%d chars)", len(clean))
            return None

        url = f"{self._base_url}/v1/text-to-speech/{self._voice_id}"
        body = {
            "text": clean,
            "model_id": self._model_id,
            "voice_settings": {
                "stability": 0.8,
                "similarity_boost": 0.9,
                "style": 0.2,
                "use_speaker_boost": True,
            },
        }
        headers = {"xi-api-key": self._api_key, "Accept": "audio/mpeg"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Speech service returned HTTP %d", e.response.status_code)
            return None
        except httpx.HTTPError as e:
            logger.warning("Speech service unavailable: %s", e)
            return None

        if not resp.content:
            logger.warning("Speech service returned an empty clip")
            return None
        voice_dir = self._media_dir / "voice"
        voice_dir.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}.mp3"
        (voice_dir / name).write_bytes(resp.content)
        logger.debug("Speech stored as %s (%d bytes)", name, len(resp.content))
        return f"voice/{name}"


class HttpImageClient:
    """OpenAI-compatible image generation. Returns the image URL.

    A content-policy rejection is retried once with a known-safe prompt.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = api_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._size = size
        self._timeout = timeout

    async def generate(self, prompt: str) -> str | None:
        url = await self._request(prompt)
        if url is _POLICY_REJECTED:
            logger.info("Image prompt rejected by content policy; retrying with a safe prompt")
            url = await self._request(SAFE_IMAGE_PROMPT)
        return url if isinstance(url, str) else None

    async def _request(self, prompt: str) -> str | object | None:
        url = f"{self._base_url}/v1/images/generations"
        body = {"model": self._model, "prompt": prompt, "n": 1, "size": self._size}
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        logger.debug("image request prompt=%.100s", prompt)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 400 and _is_policy_error(e.response):
                return _POLICY_REJECTED
            logger.warning("Image service returned HTTP %d", status)
            return None
        except httpx.HTTPError as e:
            logger.warning("Image service unavailable: %s", e)
            return None

        data = resp.json().get("data") or []
        if not data or not data[0].get("url"):
            logger.warning("Unexpected image response format")
            return None
        return data[0]["url"]


_POLICY_REJECTED = object()


def _is_policy_error(response: httpx.Response) -> bool:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return False
    return error.get("type") == "image_generation_user_error" or error.get("code") == "content_policy_violation"
