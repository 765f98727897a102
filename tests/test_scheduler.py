import threading
import time
from pathlib import Path

import pytest

from multikey_tts.credentials import CredentialPool
from multikey_tts.scheduler import (
    SynthesisResult,
    SynthesisScheduler,
    chunks_to_resubmit,
    estimate_duration_ms,
)
from multikey_tts.split_text import TextChunk


def _chunks(count):
    return [
        TextChunk(id=f"chunk_{i}", sequence_index=i, total_count=count, text=f"Sentence {i}.")
        for i in range(count)
    ]


def _pool(*secrets):
    pool = CredentialPool(recovery_policy=lambda credential: False)
    pool.add_many(secrets)
    return pool


def _success(chunk, credential):
    return SynthesisResult(
        chunk_id=chunk.id,
        sequence_index=chunk.sequence_index,
        output_file=Path(f"audio_chunk_{chunk.sequence_index:03d}.wav"),
        byte_size=10,
        succeeded=True,
        credential_used=credential.id,
        credential_name=credential.display_name,
    )


def test_results_are_sorted_despite_out_of_order_completion():
    chunks = _chunks(8)
    pool = _pool("key-one-000001", "key-two-000002", "key-three-0003", "key-four-00004")
    finished = []
    lock = threading.Lock()

    def _synthesize(chunk, credential):
        # Earlier chunks take longer, so they complete last.
        time.sleep(0.01 * (len(chunks) - chunk.sequence_index))
        with lock:
            finished.append(chunk.sequence_index)
        return _success(chunk, credential)

    results = SynthesisScheduler(pool, _synthesize, max_parallel=4).run(chunks)

    assert finished != sorted(finished)
    assert [result.sequence_index for result in results] == list(range(8))
    assert all(result.succeeded for result in results)


def test_each_chunk_is_processed_once_and_credentials_are_exclusive():
    chunks = _chunks(20)
    pool = _pool("key-one-000001", "key-two-000002", "key-three-0003")
    in_flight = set()
    seen = []
    lock = threading.Lock()

    def _synthesize(chunk, credential):
        with lock:
            assert credential.id not in in_flight
            in_flight.add(credential.id)
            seen.append(chunk.id)
        time.sleep(0.002)
        with lock:
            in_flight.discard(credential.id)
        return _success(chunk, credential)

    results = SynthesisScheduler(pool, _synthesize, max_parallel=8).run(chunks)

    assert sorted(seen) == sorted(chunk.id for chunk in chunks)
    assert len(results) == 20
    assert pool.available_count() == 3
    assert sum(credential.total_uses for credential in pool.snapshot()) == 20


def test_failing_credential_does_not_abort_run():
    chunks = _chunks(5)
    pool = _pool("good-key-00001", "bad-key-000002")

    def _synthesize(chunk, credential):
        time.sleep(0.005)
        if credential.secret == "bad-key-000002":
            return SynthesisResult.failure(chunk, credential, "quota exceeded")
        return _success(chunk, credential)

    results = SynthesisScheduler(pool, _synthesize, max_parallel=2).run(chunks)

    assert len(results) == 5
    assert [result.sequence_index for result in results] == list(range(5))
    bad_id = next(c.id for c in pool.snapshot() if c.secret == "bad-key-000002")
    for result in results:
        assert result.succeeded == (result.credential_used != bad_id)
        if not result.succeeded:
            assert result.error_detail == "quota exceeded"
    # Failures are not escalated by default.
    assert pool.healthy_count() == 2


def test_exception_from_synthesize_one_is_recorded():
    chunks = _chunks(3)
    pool = _pool("only-key-000001")

    def _synthesize(chunk, credential):
        if chunk.sequence_index == 1:
            raise RuntimeError("connection reset")
        return _success(chunk, credential)

    results = SynthesisScheduler(pool, _synthesize, max_parallel=1).run(chunks)

    assert [result.succeeded for result in results] == [True, False, True]
    assert results[1].error_detail == "connection reset"
    assert results[1].output_file is None
    assert pool.available_count() == 1


def test_failure_policy_marks_credential_unhealthy():
    chunks = _chunks(4)
    pool = _pool("only-key-000001")

    def _synthesize(chunk, credential):
        return SynthesisResult.failure(chunk, credential, "invalid key")

    scheduler = SynthesisScheduler(pool, _synthesize, max_parallel=1, failure_policy=lambda result: True)
    results = scheduler.run(chunks)

    # The first failure demotes the only key; the rest are skipped as gaps.
    assert len(results) == 1
    assert pool.healthy_count() == 0
    assert [chunk.sequence_index for chunk in chunks_to_resubmit(chunks, results)] == [0, 1, 2, 3]


def test_raising_failure_policy_releases_credential():
    chunks = _chunks(3)
    pool = _pool("only-key-000001")

    def _synthesize(chunk, credential):
        return SynthesisResult.failure(chunk, credential, "quota exceeded")

    def _policy(result):
        raise RuntimeError("policy backend unavailable")

    scheduler = SynthesisScheduler(pool, _synthesize, max_parallel=1, failure_policy=_policy)
    results = scheduler.run(chunks)

    assert [result.succeeded for result in results] == [False, False, False]
    assert pool.available_count() == 1
    assert pool.stats().in_use == 0


def test_raising_progress_callback_does_not_abort_run():
    chunks = _chunks(4)
    pool = _pool("key-one-000001", "key-two-000002")

    def _on_progress(completed, total):
        raise ValueError("display closed")

    results = SynthesisScheduler(pool, _success, max_parallel=2).run(chunks, on_progress=_on_progress)

    assert [result.sequence_index for result in results] == [0, 1, 2, 3]
    assert pool.available_count() == 2


def test_parallelism_is_capped_by_healthy_credentials():
    chunks = _chunks(6)
    pool = _pool("key-one-000001", "key-two-000002")
    active = []
    peak = []
    lock = threading.Lock()

    def _synthesize(chunk, credential):
        with lock:
            active.append(chunk.id)
            peak.append(len(active))
        time.sleep(0.01)
        with lock:
            active.remove(chunk.id)
        return _success(chunk, credential)

    scheduler = SynthesisScheduler(pool, _synthesize, max_parallel=10)
    assert scheduler.effective_parallel() == 2

    results = scheduler.run(chunks)

    assert len(results) == 6
    assert max(peak) <= 2


def test_progress_reports_cumulative_counts():
    chunks = _chunks(5)
    pool = _pool("key-one-000001", "key-two-000002")
    reports = []
    lock = threading.Lock()

    def _on_progress(completed, total):
        with lock:
            reports.append((completed, total))

    SynthesisScheduler(pool, _success, max_parallel=2).run(chunks, on_progress=_on_progress)

    assert sorted(reports) == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]


def test_no_healthy_credentials_returns_empty():
    pool = _pool("only-key-000001")
    pool.mark_unhealthy(pool.snapshot()[0].id)

    results = SynthesisScheduler(pool, _success, max_parallel=2).run(_chunks(3))

    assert results == []


def test_invalid_max_parallel():
    with pytest.raises(ValueError):
        SynthesisScheduler(_pool("only-key-000001"), _success, max_parallel=0)


def test_chunks_to_resubmit_returns_failed_and_missing():
    chunks = _chunks(4)
    pool = _pool("only-key-000001")
    credential = pool.acquire()
    results = [
        _success(chunks[0], credential),
        SynthesisResult.failure(chunks[1], credential, "boom"),
        _success(chunks[3], credential),
    ]

    pending = chunks_to_resubmit(chunks, results)

    assert [chunk.sequence_index for chunk in pending] == [1, 2]


def test_estimate_duration_ms():
    assert estimate_duration_ms(10, 2, 1000) == 5000
    assert estimate_duration_ms(10, 0) == 0
    assert estimate_duration_ms(2, 5, 1000) == 1000
