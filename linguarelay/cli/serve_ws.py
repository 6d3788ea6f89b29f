# coding=utf-8
"""
Realtime translation server over WebSocket.
"""
import argparse
import logging
import os
import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from linguarelay.accounts import HistoryStore, UsageLedger
from linguarelay.auth import AuthError, TokenVerifier, resolve_identity
from linguarelay.gateways import (
    MockSynthesizer,
    MockTranscriber,
    MockTranslator,
    OpenAIAPITranslator,
    OpenAISpeechSynthesizer,
    WhisperTranscriber,
)
from linguarelay.streaming.accumulator import SentenceAccumulator
from linguarelay.streaming.protocol import CLOSE_NORMAL, ProtocolOptions, SessionProtocolHandler
from linguarelay.streaming.registry import SessionRegistry
from linguarelay.streaming.sentence_policy import SentencePolicy

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _registry_from_args(args: Any) -> SessionRegistry:
    return SessionRegistry(
        idle_timeout_sec=float(getattr(args, "idle_timeout_sec", 300.0)),
        sweep_interval_sec=float(getattr(args, "sweep_interval_sec", 60.0)),
        max_segments=int(getattr(args, "max_segments_per_session", 10000)),
    )


def _create_app(
    args: Any,
    transcriber: Any,
    translator: Any,
    synthesizer: Any = None,
    *,
    registry: Optional[SessionRegistry] = None,
    usage: Optional[UsageLedger] = None,
    history: Optional[HistoryStore] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    registry = registry or _registry_from_args(args)
    usage = usage if usage is not None else UsageLedger()
    history = history if history is not None else HistoryStore()
    if verifier is None and getattr(args, "jwt_secret", ""):
        verifier = TokenVerifier(args.jwt_secret, algorithms=[str(getattr(args, "jwt_algorithm", "HS256"))])
    options = ProtocolOptions(
        gateway_timeout_sec=float(getattr(args, "gateway_timeout_sec", 60.0)),
        context_window_size=int(getattr(args, "context_window_size", 5)),
        context_prompt_segments=int(getattr(args, "context_prompt_segments", 3)),
        session_trace=bool(getattr(args, "session_trace_log", False)),
    )
    match_ratio = float(getattr(args, "correction_match_ratio", 0.7))
    allow_test_mode = bool(getattr(args, "allow_test_mode", False))
    runtime = SimpleNamespace(active_connections=0)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        registry.start()
        try:
            yield
        finally:
            await registry.stop()
            for gateway in (transcriber, translator, synthesizer):
                aclose = getattr(gateway, "aclose", None)
                if aclose is not None:
                    await aclose()

    app = FastAPI(title="LinguaRelay Realtime Translation", lifespan=lifespan)
    app.state.registry = registry
    app.state.usage = usage
    app.state.history = history

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "active_sessions": len(registry),
            "active_connections": runtime.active_connections,
        }

    @app.websocket("/ws/translate")
    async def ws_translate(websocket: WebSocket) -> None:
        await websocket.accept()
        runtime.active_connections += 1
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        conn_id = f"conn-{uuid.uuid4().hex[:12]}"

        async def _close(code: int, reason: str) -> None:
            await websocket.close(code=code, reason=reason)

        handler = SessionProtocolHandler(
            registry=registry,
            transcriber=transcriber,
            translator=translator,
            synthesizer=synthesizer,
            accumulator=SentenceAccumulator(SentencePolicy(match_ratio=match_ratio)),
            usage=usage,
            history=history,
            options=options,
            send=websocket.send_json,
            close=_close,
            conn_id=conn_id,
        )
        logger.info("ws open peer=%s conn=%s active=%d", peer, conn_id, runtime.active_connections)

        try:
            try:
                identity = resolve_identity(
                    header=websocket.headers.get("authorization"),
                    query_token=websocket.query_params.get("token"),
                    test_mode=str(websocket.query_params.get("test", "")).lower() in _TRUTHY,
                    allow_test_mode=allow_test_mode,
                    verifier=verifier,
                )
            except AuthError as e:
                logger.warning("ws unauthorized peer=%s reason=%s", peer, e)
                await handler.reject("Invalid or expired token")
                return

            if not await handler.on_connect(identity):
                return

            while not handler.closed:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                raw = msg.get("bytes")
                await handler.handle(raw if raw is not None else msg.get("text"))
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("ws connection failed peer=%s conn=%s", peer, conn_id)
        finally:
            closed_by_server = handler.closed
            await handler.on_disconnect()
            runtime.active_connections = max(0, runtime.active_connections - 1)
            if not closed_by_server:
                try:
                    await websocket.close(code=CLOSE_NORMAL)
                except Exception as e:
                    logger.debug("ws close after disconnect failed conn=%s err=%s", conn_id, e)
            logger.info(
                "ws close peer=%s conn=%s active=%d sessions=%d",
                peer,
                conn_id,
                runtime.active_connections,
                len(registry),
            )

    app.add_api_websocket_route("/ws", ws_translate)
    return app


def build_gateways(args: argparse.Namespace):
    """Return (transcriber, translator, synthesizer) for the configured backends."""
    timeout = float(args.gateway_timeout_sec)
    use_mock = args.mock_gateways
    if use_mock is None:
        use_mock = not (args.stt_base_url and args.stt_api_key)
    if use_mock:
        logger.warning("using mock gateways; transcripts and translations are canned")
        return MockTranscriber(), MockTranslator(), MockSynthesizer()

    transcriber = WhisperTranscriber(
        base_url=args.stt_base_url,
        model=args.stt_model,
        api_key=args.stt_api_key,
        timeout_sec=timeout,
    )
    translator = OpenAIAPITranslator(
        base_url=args.translation_api_base_url or args.stt_base_url,
        model=args.translation_api_model,
        max_new_tokens=args.translation_max_new_tokens,
        timeout_sec=timeout,
        api_key=args.translation_api_key or args.stt_api_key,
    )
    synthesizer = None
    if args.tts_base_url or args.tts_api_key:
        synthesizer = OpenAISpeechSynthesizer(
            base_url=args.tts_base_url or args.stt_base_url,
            model=args.tts_model,
            voice=args.tts_voice,
            api_key=args.tts_api_key or args.stt_api_key,
            timeout_sec=timeout,
        )
    logger.info(
        "gateways configured stt=%s translation=%s tts=%s",
        transcriber.url,
        translator.chat_url,
        synthesizer.url if synthesizer is not None else "disabled",
    )
    return transcriber, translator, synthesizer


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="LinguaRelay realtime translation server (HTTP + WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8030, help="Bind port")

    p.add_argument("--idle-timeout-sec", type=float, default=300.0, help="Evict sessions idle longer than this")
    p.add_argument("--sweep-interval-sec", type=float, default=60.0, help="Idle sweep period")
    p.add_argument(
        "--max-segments-per-session",
        type=int,
        default=10000,
        help="Audio chunks/segments accepted per session before chunk_limit",
    )
    p.add_argument("--gateway-timeout-sec", type=float, default=60.0, help="Timeout for each gateway call")
    p.add_argument("--context-window-size", type=int, default=5, help="Recent fragments kept as transcription hint")
    p.add_argument("--context-prompt-segments", type=int, default=3, help="Fragments joined into the context prompt")
    p.add_argument(
        "--correction-match-ratio",
        type=float,
        default=0.7,
        help="Share of previous words that must prefix-match for a fragment to count as a correction",
    )

    p.add_argument("--stt-base-url", default=os.environ.get("LINGUARELAY_STT_BASE_URL", ""))
    p.add_argument("--stt-model", default="whisper-large-v3-turbo")
    p.add_argument("--stt-api-key", default=os.environ.get("LINGUARELAY_STT_API_KEY", ""))
    p.add_argument("--translation-api-base-url", default="", help="Defaults to --stt-base-url")
    p.add_argument("--translation-api-model", default="llama-3.3-70b-versatile")
    p.add_argument("--translation-api-key", default=os.environ.get("LINGUARELAY_TRANSLATION_API_KEY", ""))
    p.add_argument("--translation-max-new-tokens", type=int, default=2000)
    p.add_argument("--tts-base-url", default="")
    p.add_argument("--tts-model", default="tts-1")
    p.add_argument("--tts-voice", default="alloy")
    p.add_argument("--tts-api-key", default=os.environ.get("LINGUARELAY_TTS_API_KEY", ""))
    p.add_argument(
        "--mock-gateways",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Use canned gateways (default: mock when no STT endpoint/key is configured)",
    )

    p.add_argument("--jwt-secret", default=os.environ.get("LINGUARELAY_JWT_SECRET", ""))
    p.add_argument("--jwt-algorithm", default="HS256")
    p.add_argument(
        "--allow-test-mode",
        action="store_true",
        help="Allow ?test=true connections with a premium test identity (development only)",
    )
    p.add_argument(
        "--session-trace-log",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Emit structured session_trace log rows for state transitions",
    )

    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    transcriber, translator, synthesizer = build_gateways(args)
    app = _create_app(args, transcriber, translator, synthesizer)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
