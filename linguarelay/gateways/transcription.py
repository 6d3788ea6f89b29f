# coding=utf-8
from __future__ import annotations

import base64
import io
import itertools
import logging
import re
import time
import wave
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx

from ..languages import AUTO, normalize_language_code
from .errors import GatewayError

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 1000
MAX_PROMPT_CHARS = 200

_ENCODING_FILES = {
    "LINEAR16": ("wav", "audio/wav"),
    "WAV": ("wav", "audio/wav"),
    "FLAC": ("flac", "audio/flac"),
    "OGG_OPUS": ("ogg", "audio/ogg"),
    "WEBM_OPUS": ("webm", "audio/webm"),
    "MP3": ("mp3", "audio/mpeg"),
    "M4A": ("m4a", "audio/mp4"),
}


@dataclass(frozen=True)
class TranscriptionRequest:
    audio: Union[bytes, str]
    encoding: str = "LINEAR16"
    sample_rate_hertz: int = 16000
    language_code: str = AUTO
    enable_automatic_punctuation: bool = True
    enable_word_time_offsets: bool = False
    context_prompt: Optional[str] = None
    temperature: Optional[float] = None

    def audio_bytes(self) -> bytes:
        if isinstance(self.audio, (bytes, bytearray)):
            return bytes(self.audio)
        return base64.b64decode(str(self.audio or ""))


@dataclass(frozen=True)
class TranscriptionResult:
    transcript: str
    confidence: float
    detected_language: str
    duration_ms: int


def clean_transcript(text: str) -> str:
    cleaned = str(text or "").strip()
    if not cleaned:
        return ""
    cleaned = re.sub(r"\[.*?\]", "", cleaned)
    cleaned = re.sub(r"\(.*?\)", "", cleaned)
    cleaned = re.sub(r"♪.*?♪", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip()


def pcm16_to_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap raw mono 16-bit little-endian PCM in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(max(1, int(sample_rate)))
        wf.writeframes(pcm)
    return buf.getvalue()


def estimate_duration_ms(audio_size: int, sample_rate: int) -> int:
    rate = max(1, int(sample_rate))
    return int((max(0, int(audio_size)) / (2.0 * rate)) * 1000)


def _confidence_from_segments(segments: Any) -> float:
    if not isinstance(segments, list) or not segments:
        return 0.9
    probs: List[float] = []
    for seg in segments:
        if not isinstance(seg, dict):
            continue
        avg_logprob = seg.get("avg_logprob")
        if isinstance(avg_logprob, (int, float)):
            # avg_logprob is in (-inf, 0]; map it onto 0..1.
            probs.append(max(0.0, min(1.0, 1.0 + float(avg_logprob))))
    if not probs:
        return 0.9
    return round(sum(probs) / len(probs), 4)


class WhisperTranscriber:
    """
    Transcription client for an OpenAI-compatible ``/audio/transcriptions`` endpoint.
    """

    def __init__(
        self,
        base_url: str,
        model: str = "whisper-large-v3-turbo",
        api_key: str = "",
        timeout_sec: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ValueError("transcription base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("transcription model is empty")
        self.api_key = str(api_key or "").strip()
        self.timeout_sec = max(1.0, float(timeout_sec))
        if self.base_url.endswith("/audio/transcriptions"):
            self.url = self.base_url
        elif self.base_url.endswith("/v1"):
            self.url = f"{self.base_url}/audio/transcriptions"
        else:
            self.url = f"{self.base_url}/v1/audio/transcriptions"
        self._client = client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._client

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        started = time.monotonic()
        try:
            audio = request.audio_bytes()
        except ValueError as e:
            raise GatewayError("transcription", "audio is not valid base64") from e

        if len(audio) < MIN_AUDIO_BYTES:
            logger.debug("audio too small for transcription size=%d", len(audio))
            return TranscriptionResult(
                transcript="",
                confidence=0.0,
                detected_language=normalize_language_code(request.language_code if request.language_code != AUTO else ""),
                duration_ms=0,
            )

        extension, content_type = _ENCODING_FILES.get(str(request.encoding or "").upper(), ("wav", "audio/wav"))
        payload_audio = audio
        if str(request.encoding or "").upper() == "LINEAR16" and not audio.startswith(b"RIFF"):
            payload_audio = pcm16_to_wav(audio, request.sample_rate_hertz)
        files = {"file": (f"audio.{extension}", payload_audio, content_type)}
        data: Dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
            "temperature": str(request.temperature if request.temperature is not None else 0),
        }
        if request.language_code and request.language_code != AUTO:
            data["language"] = request.language_code
        if request.context_prompt:
            data["prompt"] = request.context_prompt[-MAX_PROMPT_CHARS:]
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._http().post(self.url, files=files, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("transcription request failed err=%s latency_ms=%d", e, int((time.monotonic() - started) * 1000))
            raise GatewayError("transcription", "transcription request failed") from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            if "valid media file" in detail:
                logger.warning("transcription rejected audio as invalid media size=%d", len(audio))
                return TranscriptionResult(transcript="", confidence=0.0, detected_language="en", duration_ms=0)
            logger.warning("transcription http error status=%d detail=%s", response.status_code, detail[:200])
            raise GatewayError("transcription", f"transcription failed with status {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            logger.warning("transcription returned non-json body status=%d", response.status_code)
            raise GatewayError("transcription", "transcription response is not json") from e
        if not isinstance(payload, dict):
            logger.warning("transcription returned unexpected body type=%s", type(payload).__name__)
            raise GatewayError("transcription", "unexpected transcription response")
        transcript = clean_transcript(payload.get("text", ""))
        duration = payload.get("duration")
        duration_ms = (
            int(float(duration) * 1000)
            if isinstance(duration, (int, float))
            else estimate_duration_ms(len(audio), request.sample_rate_hertz)
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "transcription ok size=%d chars=%d language=%s prompt=%s latency_ms=%d",
            len(audio),
            len(transcript),
            payload.get("language", ""),
            bool(request.context_prompt),
            latency_ms,
        )
        return TranscriptionResult(
            transcript=transcript,
            confidence=_confidence_from_segments(payload.get("segments")),
            detected_language=normalize_language_code(payload.get("language") or request.language_code),
            duration_ms=duration_ms,
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("message", "") or "")
    return str(err or body)


MOCK_TRANSCRIPTS = (
    "Hello, how are you today?",
    "I would like to order some food.",
    "Where is the nearest train station?",
    "Thank you very much for your help.",
    "Can you please repeat that?",
    "I need directions to the airport.",
    "What time does the meeting start?",
    "The weather is really nice today.",
)


class MockTranscriber:
    """Development transcriber cycling through canned sentences."""

    def __init__(self, transcripts=MOCK_TRANSCRIPTS) -> None:
        self._cycle = itertools.cycle(list(transcripts) or [""])

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        audio = request.audio_bytes()
        language = request.language_code if request.language_code != AUTO else "en"
        return TranscriptionResult(
            transcript=next(self._cycle),
            confidence=0.92,
            detected_language=language,
            duration_ms=max(1000, estimate_duration_ms(len(audio), request.sample_rate_hertz)),
        )
