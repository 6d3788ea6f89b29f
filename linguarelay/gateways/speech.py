# coding=utf-8
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import GatewayError

logger = logging.getLogger(__name__)

# Rough speaking rate used when the engine does not report a duration.
_CHARS_PER_SECOND = 14.0
_FORMATS = {"MP3": "mp3", "OGG_OPUS": "opus", "LINEAR16": "pcm", "WAV": "wav", "FLAC": "flac"}


@dataclass(frozen=True)
class SpeechResult:
    audio_content: str
    audio_encoding: str
    duration_ms: int


def estimate_speech_ms(text: str) -> int:
    return int(len(str(text or "").strip()) / _CHARS_PER_SECOND * 1000)


class OpenAISpeechSynthesizer:
    """
    Speech client for an OpenAI-compatible ``/audio/speech`` endpoint.
    """

    def __init__(
        self,
        base_url: str,
        model: str = "tts-1",
        voice: str = "alloy",
        api_key: str = "",
        timeout_sec: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ValueError("speech base_url is empty")
        self.model = str(model or "tts-1")
        self.voice = str(voice or "alloy")
        self.api_key = str(api_key or "").strip()
        self.timeout_sec = max(1.0, float(timeout_sec))
        if self.base_url.endswith("/audio/speech"):
            self.url = self.base_url
        elif self.base_url.endswith("/v1"):
            self.url = f"{self.base_url}/audio/speech"
        else:
            self.url = f"{self.base_url}/v1/audio/speech"
        self._client = client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._client

    async def synthesize(self, text: str, language_code: str, audio_encoding: str = "MP3") -> SpeechResult:
        encoding = str(audio_encoding or "MP3").upper()
        body = {
            "model": self.model,
            "voice": self.voice,
            "input": str(text or ""),
            "response_format": _FORMATS.get(encoding, "mp3"),
        }
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        started = time.monotonic()
        try:
            response = await self._http().post(self.url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("speech synthesis failed language=%s err=%s", language_code, e)
            raise GatewayError("speech", "speech synthesis failed") from e
        audio = response.content
        logger.info(
            "speech ok language=%s chars=%d bytes=%d latency_ms=%d",
            language_code,
            len(str(text or "")),
            len(audio),
            int((time.monotonic() - started) * 1000),
        )
        return SpeechResult(
            audio_content=base64.b64encode(audio).decode("ascii"),
            audio_encoding=encoding,
            duration_ms=estimate_speech_ms(text),
        )


class MockSynthesizer:
    async def synthesize(self, text: str, language_code: str, audio_encoding: str = "MP3") -> SpeechResult:
        return SpeechResult(audio_content="", audio_encoding=str(audio_encoding or "MP3").upper(), duration_ms=estimate_speech_ms(text))
