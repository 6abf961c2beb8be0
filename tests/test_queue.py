import asyncio
import time

import pytest

from lectern import status, types as t
from lectern.errors import InputError
from lectern.queue import TranscriptQueue
from lectern.store import MemoryStore

from fakes import FakeProvider, segments


def _url(video_id: str) -> str:
    return f"https://media.example.com/{video_id}.mp4"


def test_enqueue_is_idempotent(store):
    provider = FakeProvider()

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=3, batch_pause=0)
        first = await q.enqueue("v1", _url("v1"))
        second = await q.enqueue("v1", _url("v1"))
        await q.wait_idle()
        third = await q.enqueue("v1", _url("v1"))
        return first, second, third, await store.find_transcript("v1")

    first, second, third, tr = asyncio.run(run())
    assert (first, second, third) == (True, False, False)
    assert provider.calls == [_url("v1")]
    assert tr.status == t.TranscriptStatus.COMPLETED
    assert tr.provider == "fake"
    assert tr.source_url == _url("v1")
    assert tr.content == "Hello there. Welcome to the course."
    assert tr.confidence == pytest.approx(0.9)
    assert tr.error is None
    assert tr.generated_at is not None


def test_enqueue_while_processing_is_noop(store):
    provider = FakeProvider(delay=0.05)

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await asyncio.sleep(0.01)
        again = await q.enqueue("v1", _url("v1"))
        await q.wait_idle()
        return again

    assert asyncio.run(run()) is False
    assert len(provider.calls) == 1


def test_enqueue_during_slow_read_does_not_rerun_completed():
    class SlowReadStore(MemoryStore):
        async def find_transcript(self, video_id):
            snapshot = await super().find_transcript(video_id)
            await asyncio.sleep(0.2)
            return snapshot

    store = SlowReadStore()
    provider = FakeProvider(delay=0.05)

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await asyncio.sleep(0.15)
        await q.enqueue("v1", _url("v1"))
        await q.wait_idle()

    asyncio.run(run())
    assert provider.calls == [_url("v1")]
    assert asyncio.run(store.find_transcript("v1")).status == t.TranscriptStatus.COMPLETED


def test_stores_provider_confidence(store):
    provider = FakeProvider(confidence=0.42)

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await q.wait_idle()
        return await store.find_transcript("v1")

    assert asyncio.run(run()).confidence == pytest.approx(0.42)


def test_priority_order(store):
    provider = FakeProvider()

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=1, batch_pause=0)
        await q.enqueue("A", _url("A"), t.Priority.LOW)
        await q.enqueue("B", _url("B"), "high")
        await q.enqueue("C", _url("C"), "medium")
        await q.wait_idle()

    asyncio.run(run())
    assert provider.calls == [_url("B"), _url("C"), _url("A")]


def test_equal_priority_keeps_arrival_order(store):
    provider = FakeProvider()

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=1, batch_pause=0)
        for vid in ("v1", "v2", "v3"):
            await q.enqueue(vid, _url(vid))
        await q.wait_idle()

    asyncio.run(run())
    assert provider.calls == [_url("v1"), _url("v2"), _url("v3")]


def test_concurrency_cap(store):
    provider = FakeProvider(delay=0.01)

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=2, batch_pause=0)
        for i in range(5):
            await q.enqueue(f"v{i}", _url(f"v{i}"))
        await q.wait_idle()
        return await store.list_transcripts(t.TranscriptStatus.COMPLETED)

    done = asyncio.run(run())
    assert provider.max_active == 2
    assert len(provider.calls) == 5
    assert len(done) == 5


def test_batch_pause_between_batches(store):
    provider = FakeProvider()

    async def run(count):
        q = TranscriptQueue(store, provider, max_concurrent=2, batch_pause=0.2)
        for i in range(count):
            await q.enqueue(f"p{count}-{i}", _url(f"p{count}-{i}"))
        t0 = time.monotonic()
        await q.wait_idle()
        return time.monotonic() - t0

    assert asyncio.run(run(2)) < 0.2
    assert asyncio.run(run(3)) >= 0.2


def test_failure_isolation(store):
    provider = FakeProvider(fail=[_url("bad")], delay=0.01)

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=3, batch_pause=0)
        for vid in ("ok1", "bad", "ok2"):
            await q.enqueue(vid, _url(vid))
        await q.wait_idle()
        later = await q.enqueue("ok3", _url("ok3"))
        await q.wait_idle()
        return q, later

    q, later = asyncio.run(run())
    statuses = {tr.video_id: tr for tr in asyncio.run(store.list_transcripts())}
    assert statuses["ok1"].status == t.TranscriptStatus.COMPLETED
    assert statuses["ok2"].status == t.TranscriptStatus.COMPLETED
    assert statuses["bad"].status == t.TranscriptStatus.FAILED
    assert "bad audio" in statuses["bad"].error
    assert later is True
    assert statuses["ok3"].status == t.TranscriptStatus.COMPLETED

    qs = status.queue_status(q)
    assert (qs.pending, qs.processing, qs.completed, qs.failed, qs.total) == (0, 0, 3, 1, 4)
    assert qs.active is False


def test_failed_write_failure_only_logged():
    class BrokenStore(MemoryStore):
        async def upsert_transcript(self, video_id, status, **fields):
            if status == t.TranscriptStatus.FAILED:
                raise OSError("disk full")
            return await super().upsert_transcript(video_id, status, **fields)

    store = BrokenStore()
    provider = FakeProvider(fail=[_url("bad")])

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("bad", _url("bad"))
        await q.enqueue("good", _url("good"))
        await q.wait_idle()
        return q

    q = asyncio.run(run())
    assert asyncio.run(store.find_transcript("good")).status == t.TranscriptStatus.COMPLETED
    assert asyncio.run(store.find_transcript("bad")).status == t.TranscriptStatus.PROCESSING
    assert status.queue_status(q).failed == 1


def test_regenerate_replaces_segments(store):
    provider = FakeProvider(results={_url("v1"): segments("one", "two", "three")})

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await q.wait_idle()
        before = await store.find_transcript("v1")

        provider.results[_url("v1")] = segments("new one", "new two", start=100.0)
        assert await q.enqueue("v1", _url("v1")) is False
        assert await q.regenerate("v1") is True
        await q.wait_idle()
        return before, await store.find_transcript("v1")

    before, after = asyncio.run(run())
    assert [s.text for s in before.segments] == ["one", "two", "three"]
    assert [s.text for s in after.segments] == ["new one", "new two"]
    assert after.status == t.TranscriptStatus.COMPLETED
    assert after.content == "new one new two"


def test_regenerate_while_in_flight_runs_after(store):
    provider = FakeProvider(delay=0.05)

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=3, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await asyncio.sleep(0.01)
        queued = await q.regenerate("v1")
        pending = status.queue_status(q)
        await q.wait_idle()
        return queued, pending

    queued, pending = asyncio.run(run())
    assert queued is True
    assert (pending.pending, pending.processing, pending.current_job) == (1, 1, "v1")
    assert provider.calls == [_url("v1"), _url("v1")]
    assert provider.max_active == 1


def test_regenerate_upgrades_pending_job(store):
    provider = FakeProvider()

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=1, batch_pause=0)
        await q.enqueue("a", _url("a"), "medium")
        await q.enqueue("b", _url("b"), "low")
        assert await q.regenerate("b", _url("b")) is True
        assert len(q.jobs()) == 2
        await q.wait_idle()

    asyncio.run(run())
    assert provider.calls == [_url("b"), _url("a")]


def test_regenerate_without_known_url(store):
    async def run():
        q = TranscriptQueue(store, FakeProvider())
        await q.regenerate("unknown")

    with pytest.raises(InputError):
        asyncio.run(run())


def test_enqueue_input_errors(store):
    async def run(video_id, url, priority="medium"):
        q = TranscriptQueue(store, FakeProvider())
        await q.enqueue(video_id, url, priority)

    with pytest.raises(InputError):
        asyncio.run(run("v1", ""))
    with pytest.raises(InputError):
        asyncio.run(run("", _url("v1")))
    with pytest.raises(InputError):
        asyncio.run(run("v1", _url("v1"), "urgent"))
    assert asyncio.run(store.list_transcripts()) == []


def test_retry_failed(store):
    provider = FakeProvider(fail=[_url("v1"), _url("v2")])

    async def run():
        q = TranscriptQueue(store, provider, batch_pause=0)
        await q.enqueue("v1", _url("v1"))
        await q.enqueue("v2", _url("v2"))
        await q.wait_idle()
        provider.fail.clear()
        count = await q.retry_failed()
        await q.wait_idle()
        return q, count

    q, count = asyncio.run(run())
    assert count == 2
    assert {tr.status for tr in asyncio.run(store.list_transcripts())} == {t.TranscriptStatus.COMPLETED}
    assert status.queue_status(q).failed == 0


def test_queue_missing_uses_low_priority(store):
    provider = FakeProvider()

    async def run():
        await store.upsert_transcript("done", t.TranscriptStatus.COMPLETED)
        q = TranscriptQueue(store, provider, max_concurrent=1, batch_pause=0)
        count = await q.queue_missing([
            t.VideoRef("done", _url("done")),
            t.VideoRef("m1", _url("m1")),
            t.VideoRef("no-url", ""),
        ])
        await q.enqueue("urgent", _url("urgent"), "medium")
        await q.wait_idle()
        return count

    assert asyncio.run(run()) == 1
    assert provider.calls == [_url("urgent"), _url("m1")]


def test_clear_operations(store):
    provider = FakeProvider(fail=[_url("bad")])

    async def run():
        q = TranscriptQueue(store, provider, max_concurrent=1, batch_pause=0)
        await q.enqueue("bad", _url("bad"))
        await q.enqueue("good", _url("good"))
        await q.wait_idle()
        cleared_failed = await q.clear_failed()
        after_clear_failed = status.queue_status(q)

        await q.enqueue("p1", _url("p1"))
        await q.enqueue("p2", _url("p2"))
        cleared_all = await q.clear_all()
        await q.wait_idle()
        return cleared_failed, after_clear_failed, cleared_all, status.queue_status(q)

    cleared_failed, after_clear_failed, cleared_all, final = asyncio.run(run())
    assert cleared_failed == 1
    assert (after_clear_failed.completed, after_clear_failed.failed) == (1, 0)
    assert cleared_all == 3
    assert final.total == 0
    assert provider.calls == [_url("bad"), _url("good")]
