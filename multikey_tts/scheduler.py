from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .credentials import Credential, CredentialPool
from .split_text import TextChunk

logger = logging.getLogger(__name__)

__all__ = [
    "FailurePolicy",
    "ProgressCallback",
    "SynthesisResult",
    "SynthesisScheduler",
    "SynthesizeOne",
    "chunks_to_resubmit",
    "estimate_duration_ms",
]


@dataclass(frozen=True)
class SynthesisResult:
    chunk_id: str
    sequence_index: int
    output_file: Optional[Path]
    byte_size: int
    succeeded: bool
    credential_used: str
    credential_name: str = ""
    error_detail: Optional[str] = None

    @classmethod
    def failure(cls, chunk: TextChunk, credential: Credential, error: str) -> "SynthesisResult":
        return cls(
            chunk_id=chunk.id,
            sequence_index=chunk.sequence_index,
            output_file=None,
            byte_size=0,
            succeeded=False,
            credential_used=credential.id,
            credential_name=credential.display_name,
            error_detail=error,
        )


SynthesizeOne = Callable[[TextChunk, Credential], SynthesisResult]
ProgressCallback = Callable[[int, int], None]
FailurePolicy = Callable[[SynthesisResult], bool]


class _ChunkCursor:
    """Forward-only index shared by all workers of one run."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> Optional[int]:
        with self._lock:
            if self._next >= self._size:
                return None
            index = self._next
            self._next += 1
            return index


class _Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


class SynthesisScheduler:
    """
    Runs ``synthesize_one`` for every chunk on a bounded set of worker threads.

    Each worker claims the next chunk from a shared cursor, takes the first free
    credential from the pool, synthesizes, and returns the credential with the
    observed outcome. A chunk for which no credential is free at claim time is
    skipped and leaves a gap in the results. Per-chunk failures are recorded and
    never abort the run. Results come back sorted by ``sequence_index``.

    ``failure_policy`` lets the caller escalate a failed result: when it returns
    ``True`` the credential is marked unhealthy instead of being released.
    """

    def __init__(
        self,
        pool: CredentialPool,
        synthesize_one: SynthesizeOne,
        *,
        max_parallel: int,
        failure_policy: Optional[FailurePolicy] = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be positive, got {max_parallel}.")
        self.pool = pool
        self.synthesize_one = synthesize_one
        self.max_parallel = max_parallel
        self.failure_policy = failure_policy

    def effective_parallel(self) -> int:
        return min(self.max_parallel, self.pool.healthy_count())

    def run(
        self,
        chunks: Sequence[TextChunk],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[SynthesisResult]:
        if not chunks:
            return []

        workers = self.effective_parallel()
        if workers < 1:
            logger.warning("No healthy credentials; %d chunks left unprocessed.", len(chunks))
            return []

        logger.info("Synthesizing %d chunks with %d workers.", len(chunks), workers)
        cursor = _ChunkCursor(len(chunks))
        completed = _Counter()

        def _worker(worker_id: int) -> List[SynthesisResult]:
            results: List[SynthesisResult] = []
            while True:
                index = cursor.claim()
                if index is None:
                    return results
                chunk = chunks[index]
                logger.debug("Worker %d claimed chunk %d.", worker_id, chunk.sequence_index)

                credential = self.pool.acquire()
                if credential is None:
                    logger.warning(
                        "No credential available for chunk %d; skipping.", chunk.sequence_index
                    )
                    continue

                result = self._synthesize(chunk, credential)
                if self._should_demote(result):
                    self.pool.mark_unhealthy(credential.id)
                else:
                    self.pool.release(credential.id, result.succeeded)

                results.append(result)
                done = completed.increment()
                if on_progress is not None:
                    try:
                        on_progress(done, len(chunks))
                    except Exception:
                        logger.exception("Progress callback failed at %d/%d.", done, len(chunks))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tts-worker") as executor:
            futures = [executor.submit(_worker, worker_id) for worker_id in range(workers)]
            collected = [result for future in futures for result in future.result()]

        collected.sort(key=lambda result: result.sequence_index)
        failed = sum(1 for result in collected if not result.succeeded)
        logger.info(
            "Run finished: %d succeeded, %d failed, %d skipped.",
            len(collected) - failed,
            failed,
            len(chunks) - len(collected),
        )
        return collected

    def _synthesize(self, chunk: TextChunk, credential: Credential) -> SynthesisResult:
        try:
            return self.synthesize_one(chunk, credential)
        except Exception as exc:
            logger.exception(
                "Synthesis of chunk %d with %s raised.", chunk.sequence_index, credential.display_name
            )
            return SynthesisResult.failure(chunk, credential, str(exc) or exc.__class__.__name__)

    def _should_demote(self, result: SynthesisResult) -> bool:
        if result.succeeded or self.failure_policy is None:
            return False
        try:
            return bool(self.failure_policy(result))
        except Exception:
            logger.exception(
                "Failure policy raised for chunk %d; releasing credential %s.",
                result.sequence_index,
                result.credential_name,
            )
            return False


def chunks_to_resubmit(
    chunks: Sequence[TextChunk], results: Sequence[SynthesisResult]
) -> List[TextChunk]:
    """Chunks whose synthesis failed or produced no result at all."""
    succeeded = {result.chunk_id for result in results if result.succeeded}
    return [chunk for chunk in chunks if chunk.id not in succeeded]


def estimate_duration_ms(chunk_count: int, credential_count: int, per_chunk_ms: int = 3000) -> int:
    if credential_count <= 0:
        return 0
    return math.ceil(chunk_count / credential_count) * per_chunk_ms
