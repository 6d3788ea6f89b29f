# coding=utf-8
"""
Per-connection session state machine for the translation socket.

One ``SessionProtocolHandler`` is created per websocket connection. The
connection loop feeds it every inbound frame through ``handle`` strictly in
arrival order; the handler talks to the Session Registry, runs the
transcription / accumulation / translation pipeline for realtime segments,
drains batch sessions on ``end_session`` and serializes every outbound event.

Gateway results that land after the session was cancelled, ended or evicted
are dropped: each session start, cancel, end and eviction bumps a generation
stamp that is re-checked after every await.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..accounts import HistoryEntry, HistoryStore, UsageLedger, minutes_for
from ..auth import Identity
from ..gateways import GatewayError, TranscriptionRequest
from ..languages import AUTO, is_source_language, is_translation_language
from .accumulator import AccumulationState, CompletedSentence, SentenceAccumulator
from .messages import (
    AudioChunk,
    CancelSession,
    EndSession,
    MessageError,
    Ping,
    ProcessSegment,
    StartRealtime,
    StartSession,
    decode_audio,
    decode_frame,
    error_event,
    parse_command,
    server_event,
)
from .registry import MODE_BATCH, MODE_REALTIME, Session, SessionConfig, SessionExistsError, SessionRegistry

logger = logging.getLogger(__name__)

STATE_UNAUTHENTICATED = "unauthenticated"
STATE_IDLE = "idle"
STATE_ACTIVE = "active"

CLOSE_NORMAL = 1000
CLOSE_UNAUTHORIZED = 4001
CLOSE_SESSION_EXISTS = 4002
CLOSE_IDLE_TIMEOUT = 4008

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]
CloseCallable = Callable[[int, str], Awaitable[None]]

_LOG_TEXT_CHARS = 50


@dataclass(frozen=True)
class ProtocolOptions:
    gateway_timeout_sec: float = 60.0
    context_window_size: int = 5
    context_prompt_segments: int = 3
    session_trace: bool = False


def _preview(text: str) -> str:
    return str(text or "")[:_LOG_TEXT_CHARS]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _translation_source(detected: Optional[str]) -> str:
    code = str(detected or "").strip().lower()
    return code if is_translation_language(code) else AUTO


class SessionProtocolHandler:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        transcriber: Any,
        translator: Any,
        send: SendCallable,
        close: CloseCallable,
        synthesizer: Any = None,
        accumulator: Optional[SentenceAccumulator] = None,
        usage: Optional[UsageLedger] = None,
        history: Optional[HistoryStore] = None,
        options: Optional[ProtocolOptions] = None,
        conn_id: str = "",
    ) -> None:
        self.registry = registry
        self.transcriber = transcriber
        self.translator = translator
        self.synthesizer = synthesizer
        self.accumulator = accumulator or SentenceAccumulator()
        self.usage = usage
        self.history = history
        self.options = options or ProtocolOptions()
        self.conn_id = conn_id or f"conn-{id(self):x}"
        self._send = send
        self._close = close
        self._send_lock = asyncio.Lock()

        self.state = STATE_UNAUTHENTICATED
        self.identity: Optional[Identity] = None
        self.session: Optional[Session] = None
        self.generation = 0
        self.closed = False
        self._trace_seq = 0

    # -- transport ---------------------------------------------------------

    async def _emit(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        self._trace("send", type=payload.get("type"), code=(payload.get("data") or {}).get("code"))
        async with self._send_lock:
            await self._send(payload)

    async def _event(self, event_type: str, data: Any = None) -> None:
        await self._emit(server_event(event_type, data))

    async def _error(self, code: str, message: str) -> None:
        logger.info("ws error conn=%s code=%s message=%s", self.conn_id, code, message)
        await self._emit(error_event(code, message))

    async def _shutdown(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self._trace("close", close_code=code, reason=reason)
        try:
            await self._close(code, reason)
        except Exception as e:
            logger.debug("ws close failed conn=%s code=%d err=%s", self.conn_id, code, e)

    def _trace(self, event: str, **payload: Any) -> None:
        if not self.options.session_trace:
            return
        self._trace_seq += 1
        row: Dict[str, Any] = {
            "topic": "session",
            "trace_seq": self._trace_seq,
            "ts_ms": int(time.time() * 1000),
            "conn_id": self.conn_id,
            "event": event,
            "state": self.state,
            "generation": self.generation,
            "identity": self.identity.user_id if self.identity else "",
            "session_id": self.session.id if self.session else "",
        }
        row.update({k: v for k, v in payload.items() if v is not None})
        logger.info("session_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))

    def _is_stale(self, generation: int) -> bool:
        return self.closed or generation != self.generation

    # -- lifecycle ---------------------------------------------------------

    async def on_connect(self, identity: Identity) -> bool:
        """Bind the resolved identity; False when the connection was refused."""
        self.identity = identity
        existing = self.registry.get(identity.user_id)
        if existing is not None and existing.owner != self.conn_id:
            logger.warning("ws connection refused identity=%s reason=session_exists", identity.user_id)
            await self._error("session_exists", "Session already exists for this user")
            await self._shutdown(CLOSE_SESSION_EXISTS, "Session already exists")
            return False
        self.state = STATE_IDLE
        self._trace("connected", tier=identity.tier, kind=identity.kind)
        await self._event(
            "pong",
            {"message": "Connected successfully", "identity": identity.user_id, "tier": identity.tier},
        )
        return True

    async def reject(self, message: str) -> None:
        await self._error("unauthorized", message or "Unauthorized")
        await self._shutdown(CLOSE_UNAUTHORIZED, "Unauthorized")

    async def on_disconnect(self) -> None:
        self.generation += 1
        self.closed = True
        session = self.session
        self.session = None
        if session is not None and self.identity is not None:
            await self.registry.remove(self.identity.user_id, session.id)
            logger.info("ws disconnect cleaned session identity=%s session=%s", self.identity.user_id, session.id)
        self._trace("disconnected")

    async def on_evict(self, session: Session) -> None:
        if self.session is None or self.session.id != session.id:
            return
        self.generation += 1
        self.session = None
        self.state = STATE_IDLE
        self._trace("evicted", evicted_session=session.id)
        try:
            await self._error("idle_timeout", "Session timed out due to inactivity")
        except Exception as e:
            logger.debug("idle notification failed conn=%s err=%s", self.conn_id, e)
        await self._shutdown(CLOSE_IDLE_TIMEOUT, "Session timed out")

    # -- dispatch ----------------------------------------------------------

    async def handle(self, frame: Union[bytes, bytearray, str, None]) -> None:
        if self.state == STATE_UNAUTHENTICATED or self.identity is None:
            await self._error("unauthorized", "Connection is not authenticated")
            return
        if self.session is not None:
            self.session.touch(self.registry.now())

        payload, audio = decode_frame(frame)
        try:
            if payload is None:
                if audio:
                    await self._on_audio(audio)
                return
            command = parse_command(payload)
            await self._dispatch(command)
        except MessageError as e:
            await self._error(e.code, e.message)
        except Exception:
            logger.exception("ws message handling failed conn=%s", self.conn_id)
            await self._error("internal_error", "Internal server error")

    async def _dispatch(self, command: Any) -> None:
        if isinstance(command, Ping):
            await self._event("pong", {"time": int(time.time() * 1000)})
        elif isinstance(command, StartSession):
            await self._start(command.data.to_config(), MODE_BATCH)
        elif isinstance(command, StartRealtime):
            await self._start(command.data.to_config(), MODE_REALTIME)
        elif isinstance(command, AudioChunk):
            await self._on_audio(decode_audio(command.data))
        elif isinstance(command, ProcessSegment):
            await self._on_segment(command)
        elif isinstance(command, EndSession):
            await self._end()
        elif isinstance(command, CancelSession):
            await self._cancel()

    # -- commands ----------------------------------------------------------

    async def _start(self, config: SessionConfig, mode: str) -> None:
        identity = self.identity
        if self.session is not None:
            await self._error("session_exists", "A session is already active on this connection")
            return
        if not is_translation_language(config.target_language):
            await self._error("unsupported_language", f"Unsupported target language: {config.target_language}")
            return
        if not is_source_language(config.source_language):
            await self._error("unsupported_language", f"Unsupported source language: {config.source_language}")
            return
        if not identity.bypasses_accounting and self.usage is not None:
            if not await self.usage.within_limit(identity.user_id, identity.tier):
                await self._error("usage_limit", "Daily usage limit reached")
                return

        realtime = None
        if mode == MODE_REALTIME:
            realtime = AccumulationState.open(
                config.source_language,
                config.target_language,
                self.options.context_window_size,
            )
        try:
            session = await self.registry.create(
                identity.user_id,
                config,
                subscription_tier=identity.tier,
                mode=mode,
                owner=self.conn_id,
                on_evict=self.on_evict,
                realtime=realtime,
            )
        except SessionExistsError:
            await self._error("session_exists", "Session already exists for this user")
            await self._shutdown(CLOSE_SESSION_EXISTS, "Session already exists")
            return

        self.generation += 1
        self.session = session
        self.state = STATE_ACTIVE
        self._trace("session_started", mode=mode)
        if mode == MODE_REALTIME:
            await self._event(
                "realtime_ready",
                {
                    "sessionId": session.id,
                    "sourceLang": config.source_language,
                    "targetLang": config.target_language,
                    "enableTTS": config.enable_voice_output,
                },
            )
        else:
            await self._event("session_started", {"sessionId": session.id, "config": config.to_payload()})

    def _require_session(self) -> Session:
        if self.session is None:
            raise MessageError("no_session", "No active session")
        return self.session

    async def _on_audio(self, audio: bytes) -> None:
        session = self._require_session()
        if not self.registry.count_segment(session):
            await self._error("chunk_limit", "Maximum audio chunks exceeded")
            return
        session.audio_chunks.append(bytes(audio))

    async def _on_segment(self, command: ProcessSegment) -> None:
        session = self._require_session()
        if not self.registry.count_segment(session):
            await self._error("chunk_limit", "Maximum audio segments exceeded")
            return
        data = command.data
        state = self._realtime_state(session)
        source = (data.source_lang or state.source_language or AUTO).strip().lower()
        target = (data.target_lang or state.target_language or "en").strip().lower()
        if not is_source_language(source) or not is_translation_language(target):
            await self._error("unsupported_language", f"Unsupported language pair: {source} -> {target}")
            return
        await self._process_segment(
            session,
            decode_audio(data.audio),
            requested_id=data.segment_id,
            source=source,
            target=target,
            encoding=data.encoding or session.config.audio_encoding,
        )

    def _realtime_state(self, session: Session) -> AccumulationState:
        if session.realtime is None:
            session.realtime = AccumulationState.open(
                session.config.source_language,
                session.config.target_language,
                self.options.context_window_size,
            )
        return session.realtime

    async def _process_segment(
        self,
        session: Session,
        audio: bytes,
        *,
        requested_id: Optional[int],
        source: str,
        target: str,
        encoding: str,
    ) -> None:
        state = self._realtime_state(session)
        generation = self.generation
        started = time.monotonic()
        segment_id = state.next_segment_id(requested_id)
        timeout = self.options.gateway_timeout_sec

        request = TranscriptionRequest(
            audio=audio,
            encoding=encoding,
            sample_rate_hertz=session.config.sample_rate,
            language_code=source,
            context_prompt=state.context_prompt(self.options.context_prompt_segments),
        )
        stt = None
        try:
            stt = await asyncio.wait_for(self.transcriber.transcribe(request), timeout=timeout)
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning("segment transcription failed session=%s segment=%d err=%r", session.id, segment_id, e)
        except Exception:
            logger.exception("segment transcription crashed session=%s segment=%d", session.id, segment_id)
        if stt is None:
            if self._is_stale(generation):
                return
            await self._segment_result(
                segment_id=segment_id,
                transcript="",
                translation="",
                is_final=False,
                is_correction=False,
                started=started,
                error="Transcription failed",
            )
            return
        stt_ms = _elapsed_ms(started)
        if self._is_stale(generation):
            return

        if stt.transcript.strip():
            state.detected_language = stt.detected_language
        outcome = self.accumulator.accept(state, stt.transcript, segment_id)
        if outcome.is_empty:
            self._trace("segment_empty", segment_id=segment_id)
            await self._segment_result(
                segment_id=segment_id,
                transcript="",
                translation="",
                is_final=False,
                is_correction=False,
                started=started,
                is_empty=True,
                stt_ms=stt_ms,
            )
            return

        translation = ""
        error = None
        translated_at = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.translator.translate(outcome.text, _translation_source(stt.detected_language), target),
                timeout=timeout,
            )
            translation = result.translated_text
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning("segment translation failed session=%s segment=%d err=%r", session.id, segment_id, e)
            error = "Translation failed"
        except Exception:
            logger.exception("segment translation crashed session=%s segment=%d", session.id, segment_id)
            error = "Translation failed"
        translation_ms = _elapsed_ms(translated_at)

        completed = self.accumulator.settle(state, outcome, translation)
        if self._is_stale(generation):
            return
        logger.info(
            "segment done session=%s segment=%d sentence=%d final=%s correction=%s text=%s",
            session.id,
            segment_id,
            outcome.sentence_id,
            outcome.is_complete,
            outcome.is_correction,
            _preview(outcome.text),
        )
        self._trace(
            "segment_merged",
            segment_id=segment_id,
            sentence_id=outcome.sentence_id,
            is_final=outcome.is_complete,
            is_correction=outcome.is_correction,
            text_chars=len(outcome.text),
            completed_count=len(state.completed_sentences),
        )
        await self._segment_result(
            segment_id=outcome.sentence_id,
            transcript=outcome.text,
            translation=translation,
            is_final=outcome.is_complete,
            is_correction=outcome.is_correction,
            started=started,
            detected_language=stt.detected_language,
            confidence=stt.confidence,
            stt_ms=stt_ms,
            translation_ms=translation_ms,
            error=error,
        )
        if completed is not None:
            await self._speak(session, completed, generation)

    async def _segment_result(
        self,
        *,
        segment_id: int,
        transcript: str,
        translation: str,
        is_final: bool,
        is_correction: bool,
        started: float,
        is_empty: bool = False,
        detected_language: Optional[str] = None,
        confidence: Optional[float] = None,
        stt_ms: Optional[int] = None,
        translation_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        data: Dict[str, Any] = {
            "segmentId": segment_id,
            "transcript": transcript,
            "translation": translation,
            "isFinal": is_final,
            "isCorrection": is_correction,
            "isEmpty": is_empty,
            "processingTimeMs": _elapsed_ms(started),
        }
        if detected_language is not None:
            data["detectedLanguage"] = detected_language
        if confidence is not None:
            data["confidence"] = confidence
        if stt_ms is not None:
            data["sttTimeMs"] = stt_ms
        if translation_ms is not None:
            data["translationTimeMs"] = translation_ms
        if error:
            data["error"] = error
        await self._event("segment_result", data)

    async def _speak(self, session: Session, sentence: CompletedSentence, generation: int) -> None:
        if self.synthesizer is None or not session.config.enable_voice_output or not sentence.translated_text:
            return
        try:
            speech = await asyncio.wait_for(
                self.synthesizer.synthesize(
                    sentence.translated_text,
                    session.config.target_language,
                    "MP3",
                ),
                timeout=self.options.gateway_timeout_sec,
            )
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning("speech synthesis skipped session=%s segment=%d err=%r", session.id, sentence.segment_id, e)
            return
        if self._is_stale(generation):
            return
        await self._event(
            "audio_result",
            {
                "segmentId": sentence.segment_id,
                "audioContent": speech.audio_content,
                "audioEncoding": speech.audio_encoding,
                "durationMs": speech.duration_ms,
            },
        )

    async def _end(self) -> None:
        session = self._require_session()
        identity = self.identity
        try:
            if session.mode == MODE_REALTIME:
                await self._drain_realtime(session)
            else:
                await self._drain_batch(session)
        except Exception:
            logger.exception("session finalization failed identity=%s session=%s", identity.user_id, session.id)
            await self._error("session_error", "Failed to process session")
        finally:
            self.generation += 1
            self.session = None
            self.state = STATE_IDLE
            await self.registry.remove(identity.user_id, session.id)
            self._trace("session_ended", ended_session=session.id)

    def _duration_ms(self, session: Session) -> int:
        return max(0, int((self.registry.now() - session.created_at) * 1000))

    async def _drain_batch(self, session: Session) -> None:
        identity = self.identity
        config = session.config
        audio = session.buffered_audio()
        timeout = self.options.gateway_timeout_sec
        transcript = ""
        translated = ""
        confidence = 0.0

        if audio:
            stt = await asyncio.wait_for(
                self.transcriber.transcribe(
                    TranscriptionRequest(
                        audio=audio,
                        encoding=config.audio_encoding,
                        sample_rate_hertz=config.sample_rate,
                        language_code=config.source_language,
                    )
                ),
                timeout=timeout,
            )
            transcript = stt.transcript
            confidence = stt.confidence
            await self._event(
                "final_result",
                {
                    "sessionId": session.id,
                    "transcript": transcript,
                    "confidence": stt.confidence,
                    "detectedLanguage": stt.detected_language,
                    "durationMs": stt.duration_ms,
                },
            )
            if transcript:
                result = await asyncio.wait_for(
                    self.translator.translate(
                        transcript,
                        _translation_source(stt.detected_language),
                        config.target_language,
                    ),
                    timeout=timeout,
                )
                translated = result.translated_text
                await self._event(
                    "translation_result",
                    {
                        "sessionId": session.id,
                        "originalText": transcript,
                        "translatedText": translated,
                        "sourceLang": result.detected_source_lang,
                        "targetLang": result.target_lang,
                        "confidence": result.confidence,
                    },
                )
                if config.enable_voice_output and self.synthesizer is not None and translated:
                    speech = await asyncio.wait_for(
                        self.synthesizer.synthesize(translated, config.target_language, "MP3"),
                        timeout=timeout,
                    )
                    await self._event(
                        "audio_result",
                        {
                            "sessionId": session.id,
                            "audioContent": speech.audio_content,
                            "audioEncoding": speech.audio_encoding,
                            "durationMs": speech.duration_ms,
                        },
                    )

        duration_ms = self._duration_ms(session)
        if transcript and not identity.bypasses_accounting:
            if self.history is not None:
                await self.history.save(
                    identity.user_id,
                    HistoryEntry(
                        source_text=transcript,
                        target_text=translated,
                        source_lang=config.source_language,
                        target_lang=config.target_language,
                        is_voice=True,
                        duration_ms=duration_ms,
                        confidence=confidence,
                    ),
                )
            if self.usage is not None:
                await self.usage.record(identity.user_id, max(1, minutes_for(duration_ms)))

        await self._event(
            "session_ended",
            {"sessionId": session.id, "durationMs": duration_ms, "audioChunksProcessed": len(session.audio_chunks)},
        )

    async def _drain_realtime(self, session: Session) -> None:
        identity = self.identity
        state = self._realtime_state(session)
        generation = self.generation

        audio = session.buffered_audio()
        if audio:
            session.audio_chunks.clear()
            await self._process_segment(
                session,
                audio,
                requested_id=None,
                source=state.source_language,
                target=state.target_language,
                encoding=session.config.audio_encoding,
            )

        if state.has_open_sentence:
            started = time.monotonic()
            text = state.current_sentence_text
            translation = ""
            error = None
            try:
                result = await asyncio.wait_for(
                    self.translator.translate(text, _translation_source(state.detected_language), state.target_language),
                    timeout=self.options.gateway_timeout_sec,
                )
                translation = result.translated_text
            except (GatewayError, asyncio.TimeoutError) as e:
                logger.warning("open sentence translation failed session=%s err=%r", session.id, e)
                error = "Translation failed"
            except Exception:
                logger.exception("open sentence translation crashed session=%s", session.id)
                error = "Translation failed"
            completed = self.accumulator.finalize_open(state, translation)
            await self._segment_result(
                segment_id=completed.segment_id,
                transcript=completed.source_text,
                translation=completed.translated_text,
                is_final=True,
                is_correction=False,
                started=started,
                error=error,
            )
            await self._speak(session, completed, generation)

        if not identity.bypasses_accounting and self.history is not None:
            for sentence in state.completed_sentences:
                await self.history.save(
                    identity.user_id,
                    HistoryEntry(
                        source_text=sentence.source_text,
                        target_text=sentence.translated_text,
                        source_lang=state.source_language,
                        target_lang=state.target_language,
                        is_voice=True,
                    ),
                )

        await self._event(
            "session_ended",
            {
                "sessionId": session.id,
                "durationMs": self._duration_ms(session),
                "segmentsProcessed": state.segment_counter,
                "completedSentences": len(state.completed_sentences),
            },
        )

    async def _cancel(self) -> None:
        session = self._require_session()
        self.generation += 1
        self.session = None
        self.state = STATE_IDLE
        await self.registry.remove(self.identity.user_id, session.id)
        logger.info("session cancelled identity=%s session=%s", self.identity.user_id, session.id)
        self._trace("session_cancelled", cancelled_session=session.id)
        await self._event("session_ended", {"sessionId": session.id, "cancelled": True})
