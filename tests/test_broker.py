"""
Tests — Job model & broker backends

Covers ordering, priority, delay, deduplication, retention, removal and the
retry/backoff policy on both brokers; the Redis broker runs against fakeredis,
including lock expiry and stalled-job recovery.

Run:
  pytest tests/test_broker.py -v
"""
import asyncio

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock


def make_job(queue="q", data=None, defaults=None, **opts):
    from job_queue.models import QUEUE_DEFAULTS, Job, JobOptions
    resolved = JobOptions(**opts).resolve(defaults or QUEUE_DEFAULTS)
    return Job(queue_name=queue, data=data if data is not None else {}, opts=resolved)


# ──────────────────────────────────────────────────────────────
#  Model
# ──────────────────────────────────────────────────────────────


class TestBackoff:

    def test_exponential(self):
        from job_queue.models import Backoff
        b = Backoff(delay=1000)
        assert [b.delay_for(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_fixed(self):
        from job_queue.models import Backoff, BackoffType
        b = Backoff(type=BackoffType.FIXED, delay=250)
        assert [b.delay_for(n) for n in (1, 2, 3)] == [250, 250, 250]


class TestJobModel:

    def test_defaults_applied(self):
        job = make_job()
        assert job.opts.attempts == 3
        assert job.opts.backoff.type.value == "exponential"
        assert job.opts.backoff.delay == 1000
        assert job.opts.remove_on_complete == 100
        assert job.opts.remove_on_fail == 500
        assert job.id.startswith("job_")

    def test_caller_id_used(self):
        job = make_job(job_id="welcome-42")
        assert job.id == "welcome-42"

    def test_delay_marks_delayed(self):
        from job_queue.models import JobState
        job = make_job(delay=5000)
        assert job.state == JobState.DELAYED
        assert job.ready_at == job.timestamp + 5000

    def test_wire_shape(self):
        job = make_job(data={"to": "a@b.co"}, job_id="x1", priority=2)
        d = job.to_dict()
        assert d["id"] == "x1"
        assert d["queueName"] == "q"
        assert d["data"] == {"to": "a@b.co"}
        assert d["opts"]["jobId"] == "x1"
        assert d["opts"]["priority"] == 2
        assert d["opts"]["backoff"] == {"type": "exponential", "delay": 1000}
        assert d["attemptsMade"] == 0

    def test_json_restores(self):
        from job_queue.models import Job
        job = make_job(data={"n": 1}, attempts=5)
        restored = Job.from_json(job.to_json())
        assert restored.id == job.id
        assert restored.opts.attempts == 5
        assert restored.ready_at == job.ready_at

    @pytest.mark.parametrize("priority", [-1, 2 ** 21 + 1])
    def test_priority_out_of_range(self, priority):
        with pytest.raises(ValueError):
            make_job(priority=priority)

    def test_highest_priority_number_accepted(self):
        from job_queue.models import MAX_PRIORITY
        assert make_job(priority=MAX_PRIORITY).opts.priority == MAX_PRIORITY


# ──────────────────────────────────────────────────────────────
#  In-memory broker
# ──────────────────────────────────────────────────────────────


class TestInMemoryBroker:

    @pytest_asyncio.fixture
    async def broker(self):
        from job_queue.broker import InMemoryJobBroker
        b = InMemoryJobBroker()
        yield b
        await b.quit()

    @pytest.mark.asyncio
    async def test_fifo_order(self, broker):
        for n in range(3):
            await broker.add(make_job(data={"n": n}))
        claimed = [(await broker.claim("q", timeout=0.1)).data["n"] for _ in range(3)]
        assert claimed == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_priority_first(self, broker):
        await broker.add(make_job(data={"n": "low"}, priority=5))
        await broker.add(make_job(data={"n": "high"}, priority=1))
        job = await broker.claim("q", timeout=0.1)
        assert job.data["n"] == "high"

    @pytest.mark.asyncio
    async def test_claim_marks_active(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job())
        job = await broker.claim("q", timeout=0.1)
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1
        counts = await broker.counts("q")
        assert counts.active == 1
        assert counts.waiting == 0

    @pytest.mark.asyncio
    async def test_claim_times_out_empty(self, broker):
        assert await broker.claim("q", timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_claim_wakes_on_add(self, broker):
        waiter = asyncio.create_task(broker.claim("q", timeout=2.0))
        await asyncio.sleep(0.01)
        await broker.add(make_job(data={"n": 1}))
        job = await asyncio.wait_for(waiter, timeout=1.0)
        assert job.data == {"n": 1}

    @pytest.mark.asyncio
    async def test_delayed_job_not_claimable_early(self, broker):
        await broker.add(make_job(delay=150))
        assert await broker.claim("q", timeout=0.02) is None
        counts = await broker.counts("q")
        assert counts.delayed == 1
        job = await broker.claim("q", timeout=1.0)
        assert job is not None

    @pytest.mark.asyncio
    async def test_dedup_waiting(self, broker):
        first = await broker.add(make_job(data={"v": 1}, job_id="welcome-42"))
        second = await broker.add(make_job(data={"v": 2}, job_id="welcome-42"))
        assert second.id == first.id
        assert second.data == {"v": 1}
        assert (await broker.counts("q")).waiting == 1

    @pytest.mark.asyncio
    async def test_dedup_after_completion(self, broker):
        await broker.add(make_job(job_id="once"))
        job = await broker.claim("q", timeout=0.1)
        await broker.complete(job, "ok")
        await broker.add(make_job(job_id="once"))
        assert await broker.claim("q", timeout=0.02) is None
        assert (await broker.counts("q")).completed == 1

    @pytest.mark.asyncio
    async def test_complete_records_result(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job(job_id="r1"))
        job = await broker.claim("q", timeout=0.1)
        await broker.complete(job, {"message_id": "m1"})
        stored = await broker.get_job("q", "r1")
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"message_id": "m1"}

    @pytest.mark.asyncio
    async def test_completed_retention(self, broker):
        from job_queue.models import QueueDefaults
        defaults = QueueDefaults(remove_on_complete=2)
        for n in range(3):
            await broker.add(make_job(defaults=defaults, job_id=f"c{n}"))
        for _ in range(3):
            await broker.complete(await broker.claim("q", timeout=0.1))
        assert (await broker.counts("q")).completed == 2
        assert await broker.get_job("q", "c0") is None
        assert await broker.get_job("q", "c2") is not None

    @pytest.mark.asyncio
    async def test_failed_retention(self, broker):
        from job_queue.models import QueueDefaults
        defaults = QueueDefaults(attempts=1, remove_on_fail=1)
        for n in range(2):
            await broker.add(make_job(defaults=defaults, job_id=f"f{n}"))
        for _ in range(2):
            await broker.fail(await broker.claim("q", timeout=0.1), RuntimeError("boom"))
        assert (await broker.counts("q")).failed == 1
        assert await broker.get_job("q", "f0") is None

    @pytest.mark.asyncio
    async def test_fail_reschedules_with_backoff(self, broker):
        from job_queue.models import Backoff, BackoffType, JobState
        await broker.add(make_job(job_id="retry", attempts=2,
                                  backoff=Backoff(type=BackoffType.FIXED, delay=50)))
        job = await broker.claim("q", timeout=0.1)
        assert await broker.fail(job, RuntimeError("transient")) is True
        stored = await broker.get_job("q", "retry")
        assert stored.state == JobState.DELAYED
        assert stored.failed_reason == "transient"
        assert await broker.claim("q", timeout=0.01) is None

        again = await broker.claim("q", timeout=1.0)
        assert again.attempts_made == 2
        assert await broker.fail(again, RuntimeError("still down")) is False
        assert (await broker.get_job("q", "retry")).state == JobState.FAILED
        assert (await broker.counts("q")).failed == 1

    @pytest.mark.asyncio
    async def test_remove_waiting(self, broker):
        await broker.add(make_job(job_id="gone"))
        assert await broker.remove("q", "gone") is True
        assert await broker.get_job("q", "gone") is None
        assert await broker.claim("q", timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_remove_active_refused(self, broker):
        await broker.add(make_job(job_id="busy"))
        await broker.claim("q", timeout=0.1)
        assert await broker.remove("q", "busy") is False

    @pytest.mark.asyncio
    async def test_queues_are_isolated(self, broker):
        await broker.add(make_job(queue="a"))
        assert await broker.claim("b", timeout=0.02) is None
        assert await broker.claim("a", timeout=0.1) is not None

    @pytest.mark.asyncio
    async def test_closed_broker_rejects(self, broker):
        from job_queue.errors import BrokerError
        await broker.quit()
        with pytest.raises(BrokerError):
            await broker.add(make_job())


# ──────────────────────────────────────────────────────────────
#  Redis broker / factory
# ──────────────────────────────────────────────────────────────


class TestBrokerFactory:

    def test_memory_url(self):
        from job_queue.broker import InMemoryJobBroker, create_broker
        assert isinstance(create_broker("memory://"), InMemoryJobBroker)

    def test_redis_url(self):
        from job_queue.broker import RedisJobBroker, create_broker
        assert isinstance(create_broker("redis://localhost:6379"), RedisJobBroker)

    def test_unknown_scheme(self):
        from job_queue.broker import create_broker
        from job_queue.errors import BrokerError
        with pytest.raises(BrokerError):
            create_broker("amqp://localhost")


class TestRedisBroker:

    @pytest.fixture
    def server(self):
        import fakeredis
        return fakeredis.FakeServer()

    @pytest.fixture
    def make_broker(self, server):
        from fakeredis import aioredis as fake_aioredis
        from job_queue.broker import RedisJobBroker

        def build(lock_duration_ms=30_000):
            client = fake_aioredis.FakeRedis(server=server, decode_responses=True)
            return RedisJobBroker(client=client, lock_duration_ms=lock_duration_ms)

        return build

    @pytest.fixture
    def broker(self, make_broker):
        return make_broker()

    @pytest.mark.asyncio
    async def test_bulk_claimed_in_insertion_order(self, broker):
        await broker.add_bulk([make_job(data={"n": n}) for n in range(20)])
        claimed = [(await broker.claim("q", timeout=0)).data["n"] for _ in range(20)]
        assert claimed == list(range(20))

    @pytest.mark.asyncio
    async def test_single_adds_claimed_in_insertion_order(self, broker):
        for n in range(20):
            await broker.add(make_job(data={"n": n}))
        claimed = [(await broker.claim("q", timeout=0)).data["n"] for _ in range(20)]
        assert claimed == list(range(20))

    @pytest.mark.asyncio
    async def test_priority_first(self, broker):
        from job_queue.models import MAX_PRIORITY
        await broker.add(make_job(data={"n": "low"}, priority=MAX_PRIORITY))
        await broker.add(make_job(data={"n": "mid"}, priority=5))
        await broker.add(make_job(data={"n": "mid-later"}, priority=5))
        await broker.add(make_job(data={"n": "top"}))
        claimed = [(await broker.claim("q", timeout=0)).data["n"] for _ in range(4)]
        assert claimed == ["top", "mid", "mid-later", "low"]

    @pytest.mark.asyncio
    async def test_claim_marks_active(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job(job_id="a1"))
        job = await broker.claim("q", timeout=0)
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1
        assert job.processed_on is not None
        stored = await broker.get_job("q", "a1")
        assert stored.state == JobState.ACTIVE
        assert (await broker.counts("q")).active == 1

    @pytest.mark.asyncio
    async def test_claim_empty_returns_none(self, broker):
        assert await broker.claim("q", timeout=0) is None

    @pytest.mark.asyncio
    async def test_delayed_job_promoted_when_due(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job(job_id="later", delay=50))
        assert (await broker.counts("q")).delayed == 1
        assert await broker.claim("q", timeout=0) is None

        await asyncio.sleep(0.08)
        job = await broker.claim("q", timeout=0)
        assert job.id == "later"
        assert job.state == JobState.ACTIVE
        assert (await broker.counts("q")).delayed == 0

    @pytest.mark.asyncio
    async def test_due_delayed_job_ahead_of_newer_jobs(self, broker):
        await broker.add(make_job(job_id="delayed", delay=20))
        await asyncio.sleep(0.04)
        await broker.add(make_job(job_id="fresh"))
        assert (await broker.claim("q", timeout=0)).id == "delayed"
        assert (await broker.claim("q", timeout=0)).id == "fresh"

    @pytest.mark.asyncio
    async def test_fail_reschedules_with_backoff(self, broker):
        from job_queue.models import Backoff, BackoffType, JobState, now_ms
        await broker.add(make_job(job_id="retry", attempts=2,
                                  backoff=Backoff(type=BackoffType.FIXED, delay=1000)))
        job = await broker.claim("q", timeout=0)
        before = now_ms()
        assert await broker.fail(job, RuntimeError("transient")) is True

        stored = await broker.get_job("q", "retry")
        assert stored.state == JobState.DELAYED
        assert stored.failed_reason == "transient"
        assert stored.ready_at >= before + 1000
        counts = await broker.counts("q")
        assert (counts.delayed, counts.active) == (1, 0)
        assert await broker.claim("q", timeout=0) is None

    @pytest.mark.asyncio
    async def test_exhausted_job_fails(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job(job_id="once", attempts=1))
        job = await broker.claim("q", timeout=0)
        assert await broker.fail(job, RuntimeError("boom")) is False
        stored = await broker.get_job("q", "once")
        assert stored.state == JobState.FAILED
        assert stored.finished_on is not None
        counts = await broker.counts("q")
        assert (counts.failed, counts.active, counts.delayed) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_completed_retention_evicts_oldest(self, broker):
        from job_queue.models import JobState, QueueDefaults
        defaults = QueueDefaults(remove_on_complete=2)
        for n in range(3):
            await broker.add(make_job(defaults=defaults, job_id=f"c{n}"))
        for n in range(3):
            await broker.complete(await broker.claim("q", timeout=0), {"n": n})
        assert (await broker.counts("q")).completed == 2
        assert await broker.get_job("q", "c0") is None
        stored = await broker.get_job("q", "c2")
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"n": 2}

    @pytest.mark.asyncio
    async def test_zero_retention_keeps_nothing(self, broker):
        from job_queue.models import QueueDefaults
        defaults = QueueDefaults(attempts=1, remove_on_fail=0)
        await broker.add(make_job(defaults=defaults, job_id="gone"))
        await broker.fail(await broker.claim("q", timeout=0), RuntimeError("boom"))
        assert (await broker.counts("q")).failed == 0
        assert await broker.get_job("q", "gone") is None

    @pytest.mark.asyncio
    async def test_remove_pending_only(self, broker):
        await broker.add(make_job(job_id="w1"))
        await broker.add(make_job(job_id="d1", delay=60_000))
        await broker.add(make_job(job_id="a1"))
        await broker.remove("q", "w1")
        active = await broker.claim("q", timeout=0)
        assert active.id == "a1"

        assert await broker.remove("q", "d1") is True
        assert await broker.remove("q", "a1") is False
        assert await broker.get_job("q", "d1") is None
        assert await broker.get_job("q", "a1") is not None
        counts = await broker.counts("q")
        assert (counts.waiting, counts.delayed, counts.active) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_dedup_waiting(self, broker):
        first = await broker.add(make_job(data={"v": "original"}, job_id="dup"))
        second = await broker.add(make_job(data={"v": "new"}, job_id="dup"))
        assert second.id == first.id
        assert second.data == {"v": "original"}
        assert (await broker.counts("q")).waiting == 1

    @pytest.mark.asyncio
    async def test_dedup_within_bulk(self, broker):
        jobs = await broker.add_bulk([
            make_job(data={"v": 1}, job_id="same"),
            make_job(data={"v": 2}, job_id="same"),
        ])
        assert [job.data for job in jobs] == [{"v": 1}, {"v": 1}]
        assert (await broker.counts("q")).waiting == 1

    @pytest.mark.asyncio
    async def test_dedup_after_completion(self, broker):
        from job_queue.models import JobState
        await broker.add(make_job(job_id="done"))
        await broker.complete(await broker.claim("q", timeout=0))
        again = await broker.add(make_job(job_id="done"))
        assert again.state == JobState.COMPLETED
        assert (await broker.counts("q")).waiting == 0

    @pytest.mark.asyncio
    async def test_queues_are_isolated(self, broker):
        await broker.add(make_job(queue="a", job_id="x"))
        assert await broker.claim("b", timeout=0) is None
        assert (await broker.claim("a", timeout=0)).id == "x"

    @pytest.mark.asyncio
    async def test_stalled_job_reclaimed_by_another_consumer(self, make_broker):
        from job_queue.models import JobState
        crashed = make_broker(lock_duration_ms=30)
        survivor = make_broker(lock_duration_ms=30_000)
        await crashed.add(make_job(job_id="stuck"))
        first = await crashed.claim("q", timeout=0)
        assert first.attempts_made == 1

        assert await survivor.claim("q", timeout=0) is None
        await asyncio.sleep(0.06)
        job = await survivor.claim("q", timeout=0)
        assert job.id == "stuck"
        assert job.attempts_made == 2
        assert job.state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_stalled_job_out_of_attempts_fails(self, make_broker):
        from job_queue.broker import STALLED_REASON
        from job_queue.models import JobState
        broker = make_broker(lock_duration_ms=30)
        await broker.add(make_job(job_id="stuck", attempts=1))
        await broker.claim("q", timeout=0)

        await asyncio.sleep(0.06)
        assert await broker.requeue_stalled("q") == 1
        stored = await broker.get_job("q", "stuck")
        assert stored.state == JobState.FAILED
        assert stored.failed_reason == STALLED_REASON
        counts = await broker.counts("q")
        assert (counts.failed, counts.active, counts.waiting) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_extended_lock_not_requeued(self, make_broker):
        broker = make_broker(lock_duration_ms=60)
        await broker.add(make_job(job_id="busy"))
        job = await broker.claim("q", timeout=0)
        for _ in range(3):
            await asyncio.sleep(0.03)
            assert await broker.extend_lock(job) is True
        assert await broker.requeue_stalled("q") == 0
        assert (await broker.counts("q")).active == 1

    @pytest.mark.asyncio
    async def test_complete_after_lock_lost_keeps_requeued_job(self, make_broker):
        from job_queue.models import JobState
        broker = make_broker(lock_duration_ms=30)
        await broker.add(make_job(job_id="late"))
        job = await broker.claim("q", timeout=0)
        await asyncio.sleep(0.06)
        assert await broker.requeue_stalled("q") == 1

        await broker.complete(job, {"too": "late"})
        assert await broker.extend_lock(job) is False
        stored = await broker.get_job("q", "late")
        assert stored.state == JobState.WAITING
        counts = await broker.counts("q")
        assert (counts.waiting, counts.completed) == (1, 0)

    @pytest.mark.asyncio
    async def test_quit_and_disconnect(self):
        from job_queue.broker import RedisJobBroker
        client = MagicMock()
        client.aclose = AsyncMock()
        client.connection_pool.disconnect = AsyncMock()
        broker = RedisJobBroker(client=client)
        await broker.quit()
        client.aclose.assert_awaited_once()
        await broker.disconnect()
        client.connection_pool.disconnect.assert_awaited_once_with(inuse_connections=True)
