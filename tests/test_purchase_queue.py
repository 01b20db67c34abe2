import asyncio

import pytest

from lms_server.services import purchase_queue as pq
from lms_server.services.purchase_queue import (
    JobCancelledError,
    PermanentJobError,
    PurchaseQueue,
    RetryPolicy,
    job_timestamp,
)
from lms_server.utils import metrics
from tests.conftest import FAST_POLICY, FakeClock, wait_idle


def make_queue(processor, clock=None, **kwargs) -> PurchaseQueue:
    kwargs.setdefault("policy", FAST_POLICY)
    kwargs.setdefault("prefix", "hotmart")
    kwargs.setdefault("key_func", lambda p: p["tx"])
    if clock is not None:
        kwargs["clock"] = clock
    return PurchaseQueue(processor, **kwargs)


async def test_first_attempts_run_in_submission_order():
    seen = []

    async def processor(payload):
        seen.append(payload["tx"])
        return payload["tx"].lower()

    queue = make_queue(processor)
    futures = [queue.submit({"tx": name}) for name in ("A", "B", "C")]

    assert await asyncio.gather(*futures) == ["a", "b", "c"]
    assert seen == ["A", "B", "C"]


async def test_never_more_than_one_job_in_flight():
    in_flight = 0
    peak = 0

    async def processor(payload):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return payload["tx"]

    queue = make_queue(processor)
    futures = [queue.submit({"tx": f"T{i}"}) for i in range(5)]
    await asyncio.gather(*futures)

    assert peak == 1


async def test_submit_returns_before_processing():
    started = asyncio.Event()

    async def processor(payload):
        started.set()
        return "ok"

    queue = make_queue(processor)
    future = queue.submit({"tx": "A"})

    assert not future.done()
    assert not started.is_set()
    assert queue.is_processing
    assert await future == "ok"


async def test_always_failing_job_is_attempted_four_times_then_rejected():
    calls = 0

    async def processor(payload):
        nonlocal calls
        calls += 1
        raise RuntimeError(f"supabase down (call {calls})")

    queue = make_queue(processor)
    job = queue.enqueue({"tx": "A"})

    with pytest.raises(RuntimeError, match="call 4"):
        await job.future

    assert calls == 4
    assert job.attempt == 4
    assert queue.get_error(job.id) == "supabase down (call 4)"
    assert queue.get_result(job.id) is None
    assert metrics.get_snapshot()["counters"]["queue.retried"] == 3


async def test_job_succeeding_on_third_attempt_resolves():
    calls = 0

    async def processor(payload):
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("timeout")
        return {"enrolled": True}

    queue = make_queue(processor)
    job = queue.enqueue({"tx": "A"})

    assert await job.future == {"enrolled": True}
    assert calls == 3
    assert queue.get_result(job.id) == {"enrolled": True}
    assert queue.get_error(job.id) is None


async def test_retried_job_runs_before_jobs_waiting_behind_it():
    order = []
    a_failed = False

    async def processor(payload):
        nonlocal a_failed
        tx = payload["tx"]
        order.append(tx)
        if tx == "A" and not a_failed:
            a_failed = True
            raise RuntimeError("transient")
        return tx

    queue = make_queue(processor)
    fut_a = queue.submit({"tx": "A"})
    fut_b = queue.submit({"tx": "B"})

    assert await asyncio.gather(fut_a, fut_b) == ["A", "B"]
    assert order == ["A", "A", "B"]


async def test_retries_wait_a_fixed_delay_without_backoff():
    loop = asyncio.get_running_loop()
    calls = []

    async def processor(payload):
        calls.append(loop.time())
        raise RuntimeError("still down")

    queue = make_queue(processor, policy=RetryPolicy(max_retries=3, retry_delay=0.05))
    job = queue.enqueue({"tx": "A"})

    with pytest.raises(RuntimeError):
        await job.future

    gaps = [later - earlier for earlier, later in zip(calls, calls[1:])]
    assert len(gaps) == 3
    assert all(gap >= 0.045 for gap in gaps)
    # Doubling would give 0.05, 0.1, 0.2
    assert max(gaps) - min(gaps) < 0.04


async def test_processor_cancellation_is_retried_then_rejected():
    async def processor(payload):
        if payload["tx"] == "A":
            raise asyncio.CancelledError()
        return payload["tx"]

    queue = make_queue(processor)
    first = queue.enqueue({"tx": "A"})
    second = queue.enqueue({"tx": "B"})

    with pytest.raises(JobCancelledError):
        await first.future
    assert await second.future == "B"

    await wait_idle(queue)
    assert first.attempt == 4
    assert queue.get_error(first.id) == "processor was cancelled"
    stats = queue.get_stats()
    assert (stats.completed_count, stats.failed_count, stats.queue_length) == (1, 1, 0)


async def test_permanent_error_skips_retries():
    calls = 0

    async def processor(payload):
        nonlocal calls
        calls += 1
        raise PermanentJobError("course does not exist")

    queue = make_queue(processor)
    job = queue.enqueue({"tx": "A"})

    with pytest.raises(PermanentJobError):
        await job.future

    assert calls == 1
    assert queue.get_error(job.id) == "course does not exist"


async def test_empty_error_message_is_recorded_as_type_name():
    async def processor(payload):
        raise ValueError()

    queue = make_queue(processor, policy=RetryPolicy(max_retries=0, retry_delay=0))
    job = queue.enqueue({"tx": "A"})

    with pytest.raises(ValueError):
        await job.future
    assert queue.get_error(job.id) == "ValueError"


async def test_ids_are_unique_within_the_same_millisecond(clock):
    async def processor(payload):
        return None

    queue = make_queue(processor, clock=clock)
    first = queue.enqueue({"tx": "DUP"})
    second = queue.enqueue({"tx": "DUP"})
    await asyncio.gather(first.future, second.future)

    assert first.id != second.id
    assert first.id.startswith("hotmart_DUP_1700000000000_")
    assert job_timestamp(first.id) == job_timestamp(second.id) == clock()


async def test_missing_correlation_key_still_yields_parseable_id(clock):
    async def processor(payload):
        return None

    queue = make_queue(processor, clock=clock, key_func=lambda p: p.get("tx") or "")
    job = queue.enqueue({"tx": None})
    await job.future

    assert job.id.startswith("hotmart_anon_")
    assert job_timestamp(job.id) == clock()


def test_job_timestamp_handles_underscores_and_garbage():
    assert job_timestamp("hotmart_HP_123_XYZ_1700000000500_7") == 1700000000.5
    assert job_timestamp("garbage") is None
    assert job_timestamp("hotmart_tx_notanumber_1") is None


async def test_worker_survives_bookkeeping_errors(monkeypatch):
    real_inc = pq.inc
    broken = []

    def flaky_inc(name, value=1):
        if name == "queue.completed" and not broken:
            broken.append(name)
            raise KeyError("metrics backend exploded")
        real_inc(name, value)

    monkeypatch.setattr(pq, "inc", flaky_inc)

    async def processor(payload):
        return payload["tx"]

    queue = make_queue(processor)
    first = queue.enqueue({"tx": "A"})
    second = queue.enqueue({"tx": "B"})

    with pytest.raises(KeyError):
        await first.future
    assert await second.future == "B"

    await wait_idle(queue)
    assert queue.get_error(first.id) is not None
    assert queue.get_result(first.id) is None
    assert not queue.is_processing


async def test_worker_restarts_after_going_idle():
    async def processor(payload):
        return payload["tx"]

    queue = make_queue(processor)
    assert await queue.submit({"tx": "A"}) == "A"
    await wait_idle(queue)

    assert await queue.submit({"tx": "B"}) == "B"
    assert queue.get_stats().completed_count == 2


async def test_stats_reflect_pending_and_terminal_jobs():
    gate = asyncio.Event()

    async def processor(payload):
        await gate.wait()
        if payload["tx"] == "BAD":
            raise PermanentJobError("bad payload")
        return payload["tx"]

    queue = make_queue(processor)
    good = queue.enqueue({"tx": "GOOD"})
    bad = queue.enqueue({"tx": "BAD"})
    await asyncio.sleep(0)

    stats = queue.get_stats()
    assert stats.is_processing
    assert stats.queue_length == 1  # GOOD is in flight, BAD waits

    gate.set()
    await good.future
    with pytest.raises(PermanentJobError):
        await bad.future
    await wait_idle(queue)

    stats = queue.get_stats()
    assert stats.queue_length == 0
    assert not stats.is_processing
    assert stats.completed_ids == [good.id]
    assert stats.failed_ids == [bad.id]
    assert (stats.completed_count, stats.failed_count) == (1, 1)


async def test_get_stats_is_a_pure_read():
    async def processor(payload):
        return payload["tx"]

    queue = make_queue(processor)
    await queue.submit({"tx": "A"})
    await wait_idle(queue)

    first = queue.get_stats()
    second = queue.get_stats()
    assert first == second

    first.completed_ids.append("tampered")
    assert queue.get_stats().completed_ids == second.completed_ids
    assert queue.get_stats().completed_count == 1


def test_stats_serialize_with_camel_case_keys():
    queue = PurchaseQueue(lambda p: p)
    assert queue.get_stats().model_dump(by_alias=True) == {
        "queueLength": 0,
        "isProcessing": False,
        "completedCount": 0,
        "failedCount": 0,
        "completedIds": [],
        "failedIds": [],
    }


async def test_sweep_drops_only_expired_entries():
    clock = FakeClock()

    async def processor(payload):
        if payload["tx"] == "BAD":
            raise PermanentJobError("nope")
        return payload["tx"]

    queue = make_queue(processor, clock=clock)
    old = queue.enqueue({"tx": "OLD"})
    old_bad = queue.enqueue({"tx": "BAD"})
    await old.future
    with pytest.raises(PermanentJobError):
        await old_bad.future

    clock.advance(3601)
    fresh = queue.enqueue({"tx": "NEW"})
    await fresh.future
    await wait_idle(queue)

    assert queue.get_result(old.id) == "OLD"
    assert queue.sweep() == 2

    assert queue.get_result(old.id) is None
    assert queue.get_error(old_bad.id) is None
    assert queue.get_result(fresh.id) == "NEW"


async def test_sweep_skips_malformed_ids(clock):
    queue = make_queue(lambda p: p, clock=clock)
    queue._completed["not-a-job-id"] = "kept"
    queue._failed["hotmart_tx_soon_1"] = "kept too"

    assert queue.sweep() == 0
    assert queue.get_result("not-a-job-id") == "kept"
    assert queue.get_error("hotmart_tx_soon_1") == "kept too"


async def test_periodic_sweeper_runs_and_stops():
    clock = FakeClock()

    async def processor(payload):
        return payload["tx"]

    queue = make_queue(
        processor,
        clock=clock,
        policy=RetryPolicy(retry_delay=0, retention_seconds=60, sweep_interval=0.01),
    )
    job = queue.enqueue({"tx": "A"})
    await job.future
    clock.advance(120)

    queue.start()
    queue.start()
    await asyncio.sleep(0.05)
    await queue.stop()

    assert queue.get_result(job.id) is None
    assert metrics.get_snapshot()["counters"]["queue.swept"] == 1


async def test_stop_cancels_waiting_jobs():
    gate = asyncio.Event()

    async def processor(payload):
        await gate.wait()
        return payload["tx"]

    queue = make_queue(processor)
    running = queue.enqueue({"tx": "A"})
    waiting = queue.enqueue({"tx": "B"})
    await asyncio.sleep(0)

    await queue.stop()

    assert waiting.future.cancelled()
    assert not queue.is_processing
    assert queue.get_stats().queue_length == 0
    assert running.future.cancelled()


async def test_queue_accepts_work_after_stop_before_worker_ran():
    async def processor(payload):
        return payload["tx"]

    queue = make_queue(processor)
    first = queue.enqueue({"tx": "A"})
    await queue.stop()

    assert first.future.cancelled()
    assert not queue.is_processing
    assert await asyncio.wait_for(queue.submit({"tx": "B"}), timeout=1) == "B"
