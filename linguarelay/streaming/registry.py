# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .accumulator import AccumulationState

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_SEC = 300.0
DEFAULT_SWEEP_INTERVAL_SEC = 60.0
DEFAULT_MAX_SEGMENTS = 10000

SUBSCRIPTION_TIERS = ("free", "basic", "premium", "enterprise")
MODE_BATCH = "batch"
MODE_REALTIME = "realtime"

EvictCallback = Callable[["Session"], Awaitable[None]]


class SessionExistsError(RuntimeError):
    def __init__(self, identity: str) -> None:
        super().__init__(f"identity already has an active session: {identity}")
        self.identity = identity


@dataclass(frozen=True)
class SessionConfig:
    source_language: str = "auto"
    target_language: str = "en"
    enable_voice_output: bool = False
    audio_encoding: str = "LINEAR16"
    sample_rate: int = 16000

    def to_payload(self) -> Dict[str, object]:
        return {
            "sourceLang": self.source_language,
            "targetLang": self.target_language,
            "enableTTS": self.enable_voice_output,
            "audioEncoding": self.audio_encoding,
            "sampleRate": self.sample_rate,
        }


@dataclass
class Session:
    id: str
    identity: str
    subscription_tier: str
    config: SessionConfig
    mode: str
    created_at: float
    started_wall: float
    last_activity_at: float
    segments_received: int = 0
    audio_chunks: List[bytes] = field(default_factory=list)
    realtime: Optional[AccumulationState] = None
    owner: Optional[str] = None
    on_evict: Optional[EvictCallback] = field(default=None, repr=False)

    def touch(self, now: float) -> None:
        if now > self.last_activity_at:
            self.last_activity_at = now

    def buffered_audio(self) -> bytes:
        return b"".join(self.audio_chunks)


def new_session_id() -> str:
    return f"ts-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class SessionRegistry:
    """
    Process-wide identity -> Session map owned by one app instance.

    All mutations for one identity go through that identity's lock, so two
    concurrent ``create`` calls cannot both succeed and a sweep cannot race an
    explicit removal. The idle sweep runs as a task started with ``start`` and
    cancelled with ``stop``; tests call ``sweep`` directly.
    """

    def __init__(
        self,
        idle_timeout_sec: float = DEFAULT_IDLE_TIMEOUT_SEC,
        sweep_interval_sec: float = DEFAULT_SWEEP_INTERVAL_SEC,
        max_segments: int = DEFAULT_MAX_SEGMENTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_sec = max(1.0, float(idle_timeout_sec))
        self.sweep_interval_sec = max(0.01, float(sweep_interval_sec))
        self.max_segments = max(1, int(max_segments))
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: str) -> bool:
        return identity in self._sessions

    def now(self) -> float:
        return float(self._clock())

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    def get(self, identity: str) -> Optional[Session]:
        return self._sessions.get(identity)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    async def create(
        self,
        identity: str,
        config: SessionConfig,
        *,
        subscription_tier: str = "free",
        mode: str = MODE_BATCH,
        owner: Optional[str] = None,
        on_evict: Optional[EvictCallback] = None,
        realtime: Optional[AccumulationState] = None,
    ) -> Session:
        async with self._lock_for(identity):
            if identity in self._sessions:
                raise SessionExistsError(identity)
            now = self.now()
            session = Session(
                id=new_session_id(),
                identity=identity,
                subscription_tier=subscription_tier if subscription_tier in SUBSCRIPTION_TIERS else "free",
                config=config,
                mode=mode,
                created_at=now,
                started_wall=time.time(),
                last_activity_at=now,
                realtime=realtime,
                owner=owner,
                on_evict=on_evict,
            )
            self._sessions[identity] = session
        logger.info(
            "session created identity=%s session=%s mode=%s tier=%s active=%d",
            identity,
            session.id,
            mode,
            session.subscription_tier,
            len(self._sessions),
        )
        return session

    async def remove(self, identity: str, session_id: Optional[str] = None) -> Optional[Session]:
        """Remove the identity's session; a no-op when absent or superseded."""
        async with self._lock_for(identity):
            session = self._sessions.get(identity)
            if session is None:
                return None
            if session_id is not None and session.id != session_id:
                return None
            del self._sessions[identity]
            self._locks.pop(identity, None)
        logger.info("session removed identity=%s session=%s active=%d", identity, session.id, len(self._sessions))
        return session

    def touch(self, identity: str) -> Optional[Session]:
        session = self._sessions.get(identity)
        if session is not None:
            session.touch(self.now())
        return session

    def count_segment(self, session: Session) -> bool:
        """Count one inbound segment; False once the per-session cap is reached."""
        if session.segments_received >= self.max_segments:
            return False
        session.segments_received += 1
        return True

    def is_idle(self, session: Session, now: Optional[float] = None) -> bool:
        current = self.now() if now is None else float(now)
        return current - session.last_activity_at > self.idle_timeout_sec

    async def sweep(self, now: Optional[float] = None) -> List[Session]:
        current = self.now() if now is None else float(now)
        evicted: List[Session] = []
        for identity, session in list(self._sessions.items()):
            if not self.is_idle(session, current):
                continue
            async with self._lock_for(identity):
                latest = self._sessions.get(identity)
                # Activity may have landed while waiting for the lock.
                if latest is not session or not self.is_idle(latest, current):
                    continue
                del self._sessions[identity]
                self._locks.pop(identity, None)
            evicted.append(session)
            logger.warning(
                "session idle timeout identity=%s session=%s idle_sec=%.1f",
                identity,
                session.id,
                current - session.last_activity_at,
            )
            if session.on_evict is not None:
                try:
                    await session.on_evict(session)
                except Exception:
                    logger.exception("idle eviction callback failed identity=%s session=%s", identity, session.id)
        return evicted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_sec)
            try:
                await self.sweep()
            except Exception:
                logger.exception("session sweep failed")

    def start(self) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "session sweep started interval_sec=%.1f idle_timeout_sec=%.1f",
            self.sweep_interval_sec,
            self.idle_timeout_sec,
        )

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()
