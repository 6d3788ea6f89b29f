import asyncio

from linguarelay.accounts import HistoryEntry, HistoryStore, UsageLedger, limits_for, minutes_for


def test_tier_limits():
    assert limits_for("free").daily_minutes == 10
    assert limits_for("basic").daily_minutes == 60
    assert limits_for("premium").daily_minutes == 300
    assert limits_for("enterprise").daily_minutes < 0
    assert limits_for("platinum") == limits_for("free")


def test_minutes_round_up():
    assert minutes_for(0) == 0
    assert minutes_for(1) == 1
    assert minutes_for(60000) == 1
    assert minutes_for(60001) == 2


def test_usage_ledger_limits_by_tier():
    async def run():
        ledger = UsageLedger()
        assert await ledger.within_limit("u1", "free") is True
        await ledger.record("u1", 9)
        assert await ledger.within_limit("u1", "free") is True
        await ledger.record("u1", 1)
        assert await ledger.within_limit("u1", "free") is False
        assert await ledger.within_limit("u1", "basic") is True
        await ledger.record("u2", 100000)
        assert await ledger.within_limit("u2", "enterprise") is True
        ledger.reset_daily()
        assert ledger.daily_usage("u1") == 0

    asyncio.run(run())


def test_history_store_keeps_entries_per_user():
    async def run():
        store = HistoryStore()
        await store.save("u1", HistoryEntry("hola", "hello", "es", "en"))
        await store.save("u2", HistoryEntry("salut", "hi", "fr", "en"))
        assert [e.source_text for e in store.entries("u1")] == ["hola"]
        assert store.entries("missing") == []

    asyncio.run(run())
