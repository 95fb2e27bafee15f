"""
Speech Renderer — text-to-speech for voice channels.

Only called when the request asks for voice. Messages wrapped in
<speak>...</speak> are sent as SSML, everything else as plain text.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import SpeechConfig, get_settings
from engine.errors import CollaboratorError

logger = structlog.get_logger()


def text_type(text: str) -> str:
    stripped = text.strip()
    return "ssml" if stripped.startswith("<speak>") and stripped.endswith("</speak>") else "text"


class BaseSpeechRenderer(abc.ABC):

    @abc.abstractmethod
    async def render(self, text: str) -> bytes:
        ...

    async def close(self):
        pass


class NullSpeechRenderer(BaseSpeechRenderer):
    """Renders nothing; used when no TTS service is configured."""

    async def render(self, text: str) -> bytes:
        return b""


class RESTSpeechRenderer(BaseSpeechRenderer):
    """
    Calls an HTTP synthesis endpoint:
      POST /synthesize {"text", "textType", "voiceId", "languageCode"} → audio bytes
    """

    def __init__(self, config: SpeechConfig = None):
        self.config = config or get_settings().speech
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _synthesize(self, text: str) -> bytes:
        client = await self._get_client()
        response = await client.post("/synthesize", json={
            "text": text,
            "textType": text_type(text),
            "voiceId": self.config.voice_id,
            "languageCode": self.config.language_code,
        })
        response.raise_for_status()
        return response.content

    async def render(self, text: str) -> bytes:
        try:
            audio = await self._synthesize(text)
        except httpx.HTTPError as e:
            logger.error("speech_render_failed", error=str(e))
            raise CollaboratorError(f"Speech rendering failed: {e}", "speech") from e
        logger.debug("speech_rendered", chars=len(text), audio_bytes=len(audio))
        return audio


def create_speech_renderer(config: SpeechConfig = None) -> BaseSpeechRenderer:
    """Factory function to create the configured speech renderer."""
    config = config or get_settings().speech
    if config.type == "rest" and config.base_url:
        return RESTSpeechRenderer(config)
    return NullSpeechRenderer()
