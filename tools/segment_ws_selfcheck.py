#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import wave
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import websockets

from linguarelay.debug.segment_selfcheck import analyze_segment_events, summarize_result

SEGMENT_SUFFIXES = {".m4a", ".wav", ".mp3", ".flac", ".ogg", ".webm"}
_SUFFIX_ENCODING = {".m4a": "M4A", ".wav": "WAV", ".mp3": "MP3", ".flac": "FLAC", ".ogg": "OGG_OPUS", ".webm": "WEBM_OPUS"}


def _read_pcm16_mono_wav(path: Path) -> tuple:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        if channels != 1:
            raise ValueError(f"wav must be mono, got channels={channels}")
        if sample_width != 2:
            raise ValueError(f"wav must be 16-bit PCM, got sampwidth={sample_width}")
        return wf.readframes(wf.getnframes()), wf.getframerate()


def _split_on_silence(
    raw: bytes,
    sample_rate: int,
    frame_ms: int = 30,
    silence_rms: float = 500.0,
    min_silence_ms: int = 600,
    max_segment_ms: int = 8000,
) -> List[bytes]:
    """Cut 16-bit PCM at pauses, the way a client-side segmenter would."""
    samples = np.frombuffer(raw, dtype="<i2")
    frame_len = max(1, int(sample_rate * frame_ms / 1000))
    n_frames = len(samples) // frame_len
    if n_frames == 0:
        return [raw] if raw else []
    frames = samples[: n_frames * frame_len].reshape(n_frames, frame_len).astype(np.float32)
    rms = np.sqrt(np.mean(frames * frames, axis=1))
    voiced = rms >= float(silence_rms)

    min_silence_frames = max(1, min_silence_ms // frame_ms)
    max_frames = max(1, max_segment_ms // frame_ms)
    segments: List[bytes] = []
    start = None
    silent_run = 0
    for i in range(n_frames):
        if voiced[i]:
            if start is None:
                start = i
            silent_run = 0
        elif start is not None:
            silent_run += 1
        if start is None:
            continue
        if silent_run >= min_silence_frames or i - start + 1 >= max_frames:
            segments.append(samples[start * frame_len : (i + 1) * frame_len].tobytes())
            start = None
            silent_run = 0
    if start is not None:
        segments.append(samples[start * frame_len :].tobytes())
    return segments


def _load_segment_dir(path: Path) -> List[tuple]:
    files = sorted(p for p in path.iterdir() if p.suffix.lower() in SEGMENT_SUFFIXES)
    return [(p.read_bytes(), _SUFFIX_ENCODING[p.suffix.lower()]) for p in files]


async def _recv_until(ws, events: List[Dict[str, Any]], wanted: set, timeout: float) -> Dict[str, Any]:
    while True:
        raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
        if isinstance(raw, bytes):
            continue
        msg = json.loads(raw)
        events.append(msg)
        if str(msg.get("type", "")) in wanted:
            return msg


async def _replay_segments(
    ws_url: str,
    segments: List[tuple],
    source_lang: str,
    target_lang: str,
    gap_sec: float,
    timeout: float,
    sample_rate: int = 48000,
) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:
        greeting = await _recv_until(ws, events, {"pong", "error"}, timeout)
        if greeting.get("type") != "pong":
            raise RuntimeError(f"unexpected first message: {greeting}")

        await ws.send(json.dumps({"type": "start_realtime", "data": {"sourceLang": source_lang, "targetLang": target_lang, "sampleRate": sample_rate}}))
        ready = await _recv_until(ws, events, {"realtime_ready", "error"}, timeout)
        if ready.get("type") != "realtime_ready":
            raise RuntimeError(f"realtime session refused: {ready}")

        for segment_id, (audio, encoding) in enumerate(segments, start=1):
            payload = {
                "type": "process_segment",
                "data": {
                    "audio": base64.b64encode(audio).decode("ascii"),
                    "segmentId": segment_id,
                    "encoding": encoding,
                },
            }
            await ws.send(json.dumps(payload))
            await _recv_until(ws, events, {"segment_result", "error"}, timeout)
            if gap_sec > 0:
                await asyncio.sleep(gap_sec)

        await ws.send(json.dumps({"type": "end_session"}))
        await _recv_until(ws, events, {"session_ended"}, timeout)
    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if text:
                events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay audio segments over the realtime socket and self-check results.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:8030/ws/translate")
    p.add_argument("--segments-dir", default="", help="directory of per-segment audio files, replayed in name order")
    p.add_argument("--wav", default="", help="mono 16-bit PCM wav, split into segments at pauses")
    p.add_argument("--source-lang", default="auto")
    p.add_argument("--target-lang", default="en")
    p.add_argument("--gap-sec", type=float, default=0.0, help="pause between segments")
    p.add_argument("--timeout-sec", type=float, default=60.0)
    p.add_argument("--events-jsonl", default="", help="save replayed events; or load existing when no audio given")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    segments: List[tuple] = []
    sample_rate = 48000
    if args.segments_dir:
        segments = _load_segment_dir(Path(args.segments_dir).expanduser())
    elif args.wav:
        raw, sample_rate = _read_pcm16_mono_wav(Path(args.wav).expanduser())
        segments = [(chunk, "LINEAR16") for chunk in _split_on_silence(raw, sample_rate)]

    if segments:
        events = asyncio.run(
            _replay_segments(
                ws_url=str(args.ws_url),
                segments=segments,
                source_lang=str(args.source_lang),
                target_lang=str(args.target_lang),
                gap_sec=float(args.gap_sec),
                timeout=float(args.timeout_sec),
                sample_rate=sample_rate,
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --segments-dir or --wav for replay, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    print(summarize_result(analyze_segment_events(events)))


if __name__ == "__main__":
    main()
