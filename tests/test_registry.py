import asyncio

import pytest

from linguarelay.streaming.registry import MODE_REALTIME, SessionConfig, SessionExistsError, SessionRegistry


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_create_rejects_second_session_for_identity():
    async def run():
        registry = SessionRegistry()
        first = await registry.create("u1", SessionConfig(target_language="es"))
        with pytest.raises(SessionExistsError):
            await registry.create("u1", SessionConfig(target_language="fr"))
        assert registry.get("u1") is first
        assert registry.get("u1").config.target_language == "es"

    asyncio.run(run())


def test_concurrent_creates_only_one_succeeds():
    async def run():
        registry = SessionRegistry()
        results = await asyncio.gather(
            registry.create("u1", SessionConfig()),
            registry.create("u1", SessionConfig()),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, SessionExistsError)]
        assert len(errors) == 1
        assert len(registry) == 1

    asyncio.run(run())


def test_remove_is_idempotent_and_guarded_by_session_id():
    async def run():
        registry = SessionRegistry()
        session = await registry.create("u1", SessionConfig())
        assert await registry.remove("u1", "other-session") is None
        assert "u1" in registry
        assert await registry.remove("u1", session.id) is session
        assert await registry.remove("u1") is None
        assert await registry.remove("never-existed") is None
        assert registry.get("u1") is None

    asyncio.run(run())


def test_sweep_evicts_only_idle_sessions_and_notifies_owner():
    clock = _Clock()
    notified = []

    async def on_evict(session):
        notified.append(session.identity)

    async def run():
        registry = SessionRegistry(idle_timeout_sec=300, clock=clock)
        await registry.create("idle", SessionConfig(), on_evict=on_evict)
        await registry.create("busy", SessionConfig(), on_evict=on_evict, mode=MODE_REALTIME)
        clock.now += 250
        registry.touch("busy")
        clock.now += 100
        evicted = await registry.sweep()
        assert [s.identity for s in evicted] == ["idle"]
        assert registry.get("idle") is None
        assert registry.get("busy") is not None

    asyncio.run(run())
    assert notified == ["idle"]


def test_sweep_survives_failing_eviction_callback():
    clock = _Clock()

    async def on_evict(session):
        raise RuntimeError("socket already gone")

    async def run():
        registry = SessionRegistry(idle_timeout_sec=10, clock=clock)
        await registry.create("a", SessionConfig(), on_evict=on_evict)
        await registry.create("b", SessionConfig(), on_evict=on_evict)
        clock.now += 60
        evicted = await registry.sweep()
        assert len(evicted) == 2
        assert len(registry) == 0

    asyncio.run(run())


def test_session_activity_is_monotonic():
    clock = _Clock()

    async def run():
        registry = SessionRegistry(clock=clock)
        session = await registry.create("u1", SessionConfig())
        clock.now += 5
        registry.touch("u1")
        assert session.last_activity_at == 1005.0
        session.touch(900.0)
        assert session.last_activity_at == 1005.0

    asyncio.run(run())


def test_count_segment_enforces_cap():
    async def run():
        registry = SessionRegistry(max_segments=2)
        session = await registry.create("u1", SessionConfig())
        assert registry.count_segment(session) is True
        assert registry.count_segment(session) is True
        assert registry.count_segment(session) is False
        assert session.segments_received == 2

    asyncio.run(run())


def test_sweep_task_start_and_stop():
    clock = _Clock()

    async def run():
        registry = SessionRegistry(idle_timeout_sec=1, sweep_interval_sec=0.01, clock=clock)
        await registry.create("u1", SessionConfig())
        registry.start()
        assert registry.running is True
        clock.now += 10
        for _ in range(50):
            if registry.get("u1") is None:
                break
            await asyncio.sleep(0.01)
        await registry.stop()
        assert registry.running is False
        assert registry.get("u1") is None

    asyncio.run(run())


def test_session_ids_are_unique_and_config_payload_is_camel_case():
    async def run():
        registry = SessionRegistry()
        a = await registry.create("a", SessionConfig(source_language="es", target_language="en"))
        b = await registry.create("b", SessionConfig())
        assert a.id != b.id
        assert a.id.startswith("ts-")
        assert a.config.to_payload() == {
            "sourceLang": "es",
            "targetLang": "en",
            "enableTTS": False,
            "audioEncoding": "LINEAR16",
            "sampleRate": 16000,
        }
        assert a.subscription_tier == "free"

    asyncio.run(run())
