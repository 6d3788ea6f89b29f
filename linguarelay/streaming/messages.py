# coding=utf-8
"""
Client command schema and server event envelopes for the translation socket.

Every client frame is either a JSON command ``{"type": ..., "data": ...}`` or
raw audio. Commands are validated into one model per command type; clients
that put command fields at the top level get them folded into ``data`` first.
"""
from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .registry import SessionConfig

AUDIO_ENCODINGS = ("LINEAR16", "FLAC", "OGG_OPUS", "WEBM_OPUS", "MP3", "M4A", "WAV")
AudioEncoding = Literal["LINEAR16", "FLAC", "OGG_OPUS", "WEBM_OPUS", "MP3", "M4A", "WAV"]

SERVER_EVENT_TYPES = (
    "session_started",
    "realtime_ready",
    "session_ended",
    "segment_result",
    "final_result",
    "translation_result",
    "audio_result",
    "error",
    "pong",
)


class MessageError(ValueError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionConfigData(_CamelModel):
    source_lang: str = Field(default="auto", alias="sourceLang")
    target_lang: str = Field(alias="targetLang", min_length=2, max_length=5)
    enable_tts: bool = Field(default=False, alias="enableTTS")
    audio_encoding: AudioEncoding = Field(default="LINEAR16", alias="audioEncoding")
    sample_rate: int = Field(default=16000, alias="sampleRate", ge=8000, le=48000)

    def to_config(self) -> SessionConfig:
        return SessionConfig(
            source_language=self.source_lang.strip().lower(),
            target_language=self.target_lang.strip().lower(),
            enable_voice_output=self.enable_tts,
            audio_encoding=self.audio_encoding,
            sample_rate=self.sample_rate,
        )


class RealtimeConfigData(_CamelModel):
    source_lang: Optional[str] = Field(default=None, alias="sourceLang")
    target_lang: Optional[str] = Field(default=None, alias="targetLang")
    enable_tts: bool = Field(default=False, alias="enableTTS")
    audio_encoding: AudioEncoding = Field(default="M4A", alias="audioEncoding")
    sample_rate: int = Field(default=48000, alias="sampleRate", ge=8000, le=48000)

    def to_config(self) -> SessionConfig:
        return SessionConfig(
            source_language=(self.source_lang or "auto").strip().lower(),
            target_language=(self.target_lang or "en").strip().lower(),
            enable_voice_output=self.enable_tts,
            audio_encoding=self.audio_encoding,
            sample_rate=self.sample_rate,
        )


class SegmentData(_CamelModel):
    audio: str = Field(min_length=1)
    segment_id: Optional[int] = Field(default=None, alias="segmentId")
    source_lang: Optional[str] = Field(default=None, alias="sourceLang")
    target_lang: Optional[str] = Field(default=None, alias="targetLang")
    encoding: Optional[AudioEncoding] = None


class StartSession(_CamelModel):
    type: Literal["start_session"]
    data: SessionConfigData


class StartRealtime(_CamelModel):
    type: Literal["start_realtime"]
    data: RealtimeConfigData = Field(default_factory=RealtimeConfigData)


class AudioChunk(_CamelModel):
    type: Literal["audio_chunk"]
    data: str


class ProcessSegment(_CamelModel):
    type: Literal["process_segment"]
    data: SegmentData


class EndSession(_CamelModel):
    type: Literal["end_session"]


class CancelSession(_CamelModel):
    type: Literal["cancel_session"]


class Ping(_CamelModel):
    type: Literal["ping"]


ClientCommand = Annotated[
    Union[StartSession, StartRealtime, AudioChunk, ProcessSegment, EndSession, CancelSession, Ping],
    Field(discriminator="type"),
]
_COMMAND_ADAPTER: TypeAdapter = TypeAdapter(ClientCommand)
COMMAND_TYPES = ("start_session", "start_realtime", "audio_chunk", "process_segment", "end_session", "cancel_session", "ping")
_INVALID_CODES = {
    "start_session": "invalid_config",
    "start_realtime": "invalid_config",
    "process_segment": "invalid_segment",
    "audio_chunk": "invalid_segment",
}


def decode_frame(frame: Union[bytes, bytearray, str, None]) -> Tuple[Optional[Dict[str, Any]], bytes]:
    """
    Split one transport frame into (json_object, b"") or (None, audio_bytes).

    A frame is a command only when it parses as a JSON object whose text starts
    with ``{``; anything else is raw audio.
    """
    if frame is None:
        return None, b""
    if isinstance(frame, str):
        raw = frame.encode("utf-8")
        text = frame
    else:
        raw = bytes(frame)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None, raw

    if not text.lstrip().startswith("{"):
        return None, raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None, raw
    if not isinstance(payload, dict):
        return None, raw
    return payload, b""


def _fold_top_level(payload: Dict[str, Any]) -> Dict[str, Any]:
    if "data" in payload:
        return payload
    extra = {k: v for k, v in payload.items() if k != "type"}
    if not extra:
        return payload
    return {"type": payload.get("type"), "data": extra}


def parse_command(payload: Dict[str, Any]) -> ClientCommand:
    msg_type = str(payload.get("type", "") or "")
    if msg_type not in COMMAND_TYPES:
        raise MessageError("unknown_message", f"Unknown message type: {msg_type or '<missing>'}")
    normalized = _fold_top_level(payload)
    if msg_type == "start_realtime" and normalized.get("data") is None:
        normalized = {"type": msg_type}
    try:
        return _COMMAND_ADAPTER.validate_python(normalized)
    except ValidationError as e:
        code = _INVALID_CODES.get(msg_type, "invalid_message")
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())[1:]) or "data" for err in e.errors())
        if code == "invalid_config":
            raise MessageError(code, "Invalid session configuration") from e
        if msg_type == "process_segment" and any("audio" in err.get("loc", ()) or err.get("loc", ())[-1:] == ("data",) for err in e.errors()):
            raise MessageError(code, "Audio data is required") from e
        raise MessageError(code, f"Invalid {msg_type} message: {fields}") from e


def decode_audio(data: str) -> bytes:
    try:
        return base64.b64decode(str(data or ""), validate=False)
    except (binascii.Error, ValueError) as e:
        raise MessageError("invalid_segment", "Audio is not valid base64") from e


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def server_event(event_type: str, data: Any = None) -> Dict[str, Any]:
    if event_type not in SERVER_EVENT_TYPES:
        raise ValueError(f"unknown server event type: {event_type}")
    payload: Dict[str, Any] = {"type": event_type, "timestamp": utc_timestamp()}
    if data is not None:
        payload["data"] = data
    return payload


def error_event(code: str, message: str) -> Dict[str, Any]:
    return server_event("error", {"code": code, "message": message})
