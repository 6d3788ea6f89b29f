import asyncio
import json
import logging

from linguarelay.auth import Identity
from linguarelay.gateways import TranscriptionResult, TranslationResult
from linguarelay.streaming.protocol import (
    CLOSE_IDLE_TIMEOUT,
    STATE_ACTIVE,
    STATE_IDLE,
    ProtocolOptions,
    SessionProtocolHandler,
)
from linguarelay.streaming.registry import SessionRegistry

SEGMENT = json.dumps({"type": "process_segment", "data": {"audio": "aGVsbG8gd29ybGQ="}})


class _Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _GatedTranscriber:
    def __init__(self, text="hello"):
        self.text = text
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def transcribe(self, request):
        self.started.set()
        await self.gate.wait()
        return TranscriptionResult(transcript=self.text, confidence=0.9, detected_language="en", duration_ms=100)


class _EchoTranslator:
    async def translate(self, text, source_lang, target_lang):
        return TranslationResult(translated_text=text.upper(), detected_source_lang="en", target_lang=target_lang, confidence=0.9)


def _handler(registry, transcriber, sent, closed, **kwargs):
    async def send(payload):
        sent.append(payload)

    async def close(code, reason):
        closed.append((code, reason))

    return SessionProtocolHandler(
        registry=registry,
        transcriber=transcriber,
        translator=_EchoTranslator(),
        send=send,
        close=close,
        **kwargs,
    )


def test_commands_before_connect_are_unauthorized():
    async def run():
        sent, closed = [], []
        handler = _handler(SessionRegistry(), _GatedTranscriber(), sent, closed)
        await handler.handle('{"type":"ping"}')
        return sent

    sent = asyncio.run(run())
    assert sent[0]["data"]["code"] == "unauthorized"


def test_results_after_idle_eviction_are_dropped():
    clock = _Clock()

    async def run():
        sent, closed = [], []
        registry = SessionRegistry(idle_timeout_sec=30, clock=clock)
        stt = _GatedTranscriber()
        handler = _handler(registry, stt, sent, closed)
        await handler.on_connect(Identity("u1", "free"))
        await handler.handle('{"type":"start_realtime"}')
        assert handler.state == STATE_ACTIVE

        task = asyncio.create_task(handler.handle(SEGMENT))
        await stt.started.wait()
        clock.now += 60
        evicted = await registry.sweep()
        stt.gate.set()
        await task
        return sent, closed, evicted, handler

    sent, closed, evicted, handler = asyncio.run(run())
    assert [s.identity for s in evicted] == ["u1"]
    types = [m["type"] for m in sent]
    assert "segment_result" not in types
    assert sent[-1]["data"]["code"] == "idle_timeout"
    assert closed == [(CLOSE_IDLE_TIMEOUT, "Session timed out")]
    assert handler.session is None
    assert handler.state == STATE_IDLE


def test_disconnect_mid_segment_drops_result_and_removes_session():
    async def run():
        sent, closed = [], []
        registry = SessionRegistry()
        stt = _GatedTranscriber()
        handler = _handler(registry, stt, sent, closed)
        await handler.on_connect(Identity("u1", "free"))
        await handler.handle('{"type":"start_realtime"}')
        task = asyncio.create_task(handler.handle(SEGMENT))
        await stt.started.wait()
        await handler.on_disconnect()
        stt.gate.set()
        await task
        return sent, registry

    sent, registry = asyncio.run(run())
    assert [m["type"] for m in sent] == ["pong", "realtime_ready"]
    assert len(registry) == 0


def test_disconnect_does_not_remove_a_newer_session():
    async def run():
        registry = SessionRegistry()
        old = _handler(registry, _GatedTranscriber(), [], [])
        await old.on_connect(Identity("u1", "free"))
        await old.handle('{"type":"start_session","data":{"targetLang":"es"}}')
        stale_session = old.session
        await registry.remove("u1", stale_session.id)

        new = _handler(registry, _GatedTranscriber(), [], [])
        await new.on_connect(Identity("u1", "free"))
        await new.handle('{"type":"start_session","data":{"targetLang":"fr"}}')

        await old.on_disconnect()
        return registry, new

    registry, new = asyncio.run(run())
    assert registry.get("u1") is new.session


def test_every_inbound_message_touches_session():
    clock = _Clock(100.0)

    async def run():
        registry = SessionRegistry(clock=clock)
        handler = _handler(registry, _GatedTranscriber(), [], [])
        await handler.on_connect(Identity("u1", "free"))
        await handler.handle('{"type":"start_session","data":{"targetLang":"es"}}')
        clock.now = 150.0
        await handler.handle('{"type":"ping"}')
        return handler.session

    session = asyncio.run(run())
    assert session.last_activity_at == 150.0


def test_session_trace_rows(caplog):
    caplog.set_level(logging.INFO, logger="linguarelay.streaming.protocol")

    async def run():
        handler = _handler(
            SessionRegistry(),
            _GatedTranscriber(),
            [],
            [],
            options=ProtocolOptions(session_trace=True),
            conn_id="conn-trace",
        )
        await handler.on_connect(Identity("u1", "free"))
        await handler.handle('{"type":"start_realtime"}')

    asyncio.run(run())
    rows = [
        json.loads(r.getMessage().split("session_trace ", 1)[1])
        for r in caplog.records
        if r.getMessage().startswith("session_trace ")
    ]
    events = [r["event"] for r in rows]
    assert "connected" in events
    assert "session_started" in events
    assert all(r["conn_id"] == "conn-trace" for r in rows)
    assert rows[-1]["type"] == "realtime_ready"
