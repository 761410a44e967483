"""Chunked rendering shared by the async worker and the synchronous path.

A document is split into chunks at layout time. Chunks render on a bounded
thread pool; at most ``concurrency`` of them are in flight, and the next one is
only submitted after the cancel flag and the job deadline were checked. The
merge step runs once, after every chunk succeeded.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .config import Settings
from .errors import CancellationError, ChunkRenderError, RenderTimeoutError
from .layout import paginate, split_into_chunks
from .report.merge import ChunkMerger
from .report.renderers import ChunkRenderer, RenderContext
from .storage import remove_tree
from .types import Assessment, Chunk, ChunkResult, PageLayout


logger = logging.getLogger(__name__)


def _never() -> bool:
    return False


@dataclass
class PipelineHooks:
    is_cancelled: Callable[[], bool] = _never
    on_progress: Callable[[int, int], None] | None = None
    on_event: Callable[..., None] | None = None

    def event(self, name: str, **fields: Any) -> None:
        if self.on_event is not None:
            self.on_event(name, **fields)


@dataclass
class PipelineResult:
    page_count: int
    chunk_results: list[ChunkResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def layout_chunks(assessment: Assessment, settings: Settings) -> tuple[list[PageLayout], list[Chunk]]:
    pages = paginate(assessment, words_per_page=settings.words_per_page)
    chunks = split_into_chunks(
        pages,
        max_pages=settings.max_chunk_pages,
        max_words=settings.max_chunk_words,
    )
    return pages, chunks


class ChunkPipeline:
    def __init__(
        self,
        renderer: ChunkRenderer,
        merger: ChunkMerger,
        *,
        concurrency: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        chunk_timeout_seconds: float | None = None,
    ):
        self.renderer = renderer
        self.merger = merger
        self.concurrency = max(1, int(concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.chunk_timeout_seconds = chunk_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, renderer: ChunkRenderer) -> 'ChunkPipeline':
        return cls(
            renderer,
            ChunkMerger(
                renderer.output_format,
                font_name=settings.pdf_font_name,
                margin=settings.pdf_page_margin,
            ),
            concurrency=settings.chunk_concurrency,
            max_attempts=settings.chunk_max_attempts,
            backoff_seconds=settings.chunk_retry_backoff_seconds,
            chunk_timeout_seconds=settings.chunk_timeout_seconds,
        )

    def _chunk_path(self, work_dir: Path, chunk: Chunk) -> Path:
        return work_dir / 'chunks' / f'chunk-{chunk.index:05d}.{self.renderer.output_format.extension}'

    def _render_with_retry(
        self,
        chunk: Chunk,
        context: RenderContext,
        work_dir: Path,
        stop: threading.Event,
        hooks: PipelineHooks,
    ) -> ChunkResult:
        path = self._chunk_path(work_dir, chunk)
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            if stop.is_set():
                break
            try:
                page_count = self.renderer.render(chunk, context, path)
                return ChunkResult(index=chunk.index, path=str(path), page_count=page_count, attempts=attempt)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    'Chunk %s (pages %s-%s) attempt %s/%s failed: %s',
                    chunk.index,
                    chunk.page_start,
                    chunk.page_end,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                hooks.event(
                    'chunk_attempt_failed',
                    chunk_index=chunk.index,
                    attempt=attempt,
                    error=f'{type(exc).__name__}: {exc}',
                )
                if attempt < self.max_attempts:
                    stop.wait(self.backoff_seconds * (2 ** (attempt - 1)))

        cause = f'{type(last_error).__name__}: {last_error}' if last_error else 'aborted'
        raise ChunkRenderError(
            f'Chunk {chunk.index} (pages {chunk.page_start}-{chunk.page_end}) failed '
            f'after {self.max_attempts} attempts: {cause}',
            chunk_index=chunk.index,
            attempts=self.max_attempts,
            cause=cause,
            detail={'page_start': chunk.page_start, 'page_end': chunk.page_end},
        )

    def _remove_when_done(self, futures: list[Future], scratch_dir: Path) -> None:
        """Drop ``scratch_dir`` once the last abandoned render returns.

        Threads cannot be interrupted; one still rendering after a timeout
        or cancellation would otherwise leave its chunk file behind.
        """
        remaining = len(futures)
        lock = threading.Lock()

        def finished(_: Future) -> None:
            nonlocal remaining
            with lock:
                remaining -= 1
                last = remaining == 0
            if last:
                remove_tree(scratch_dir)
                logger.info('Removed %s after %s abandoned chunk render(s) returned', scratch_dir, len(futures))

        for future in futures:
            future.add_done_callback(finished)

    def _wait_timeout(self, deadline: float | None, started: dict[Future, float]) -> float | None:
        now = time.monotonic()
        limits: list[float] = []
        if deadline is not None:
            limits.append(deadline - now)
        if self.chunk_timeout_seconds:
            limits.extend(t0 + self.chunk_timeout_seconds - now for t0 in started.values())
        if not limits:
            return None
        return max(0.0, min(limits))

    def _raise_expired(
        self,
        deadline: float | None,
        pending: dict[Future, Chunk],
        started: dict[Future, float],
        job_timeout_seconds: float | None,
    ) -> None:
        now = time.monotonic()
        if deadline is not None and now >= deadline:
            raise RenderTimeoutError(
                'Report generation exceeded its wall-clock ceiling.',
                scope='job',
                limit_seconds=job_timeout_seconds,
            )
        if self.chunk_timeout_seconds:
            for future, t0 in started.items():
                if now - t0 >= self.chunk_timeout_seconds:
                    chunk = pending[future]
                    raise RenderTimeoutError(
                        f'Chunk {chunk.index} (pages {chunk.page_start}-{chunk.page_end}) exceeded '
                        f'{self.chunk_timeout_seconds:g}s.',
                        scope='chunk',
                        chunk_index=chunk.index,
                        limit_seconds=self.chunk_timeout_seconds,
                    )

    def run(
        self,
        chunks: list[Chunk],
        *,
        context: RenderContext,
        work_dir: Path,
        output_path: Path,
        deadline: float | None = None,
        job_timeout_seconds: float | None = None,
        hooks: PipelineHooks | None = None,
        scratch_dir: Path | None = None,
    ) -> PipelineResult:
        hooks = hooks or PipelineHooks()
        scratch_dir = scratch_dir or work_dir / 'chunks'
        started_at = time.monotonic()
        total = len(chunks)
        results: list[ChunkResult] = []
        pending: dict[Future, Chunk] = {}
        started: dict[Future, float] = {}
        stop = threading.Event()
        next_index = 0

        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='chunk-render')
        try:
            while next_index < total or pending:
                while next_index < total and len(pending) < self.concurrency:
                    if hooks.is_cancelled():
                        raise CancellationError(
                            'Report generation was cancelled.',
                            detail={'chunks_done': len(results), 'chunks_total': total},
                        )
                    self._raise_expired(deadline, pending, started, job_timeout_seconds)
                    chunk = chunks[next_index]
                    future = executor.submit(self._render_with_retry, chunk, context, work_dir, stop, hooks)
                    pending[future] = chunk
                    started[future] = time.monotonic()
                    next_index += 1

                done, _ = wait(
                    pending,
                    timeout=self._wait_timeout(deadline, started),
                    return_when=FIRST_COMPLETED,
                )
                if not done:
                    self._raise_expired(deadline, pending, started, job_timeout_seconds)
                    continue

                for future in sorted(done, key=lambda f: pending[f].index):
                    chunk = pending.pop(future)
                    started.pop(future, None)
                    result = future.result()
                    results.append(result)
                    hooks.event(
                        'chunk_rendered',
                        chunk_index=chunk.index,
                        pages=result.page_count,
                        attempts=result.attempts,
                    )
                    if hooks.on_progress is not None:
                        hooks.on_progress(len(results), total)

                if pending or next_index < total:
                    if hooks.is_cancelled():
                        raise CancellationError(
                            'Report generation was cancelled.',
                            detail={'chunks_done': len(results), 'chunks_total': total},
                        )
        finally:
            stop.set()
            executor.shutdown(wait=False, cancel_futures=True)
            abandoned = [future for future in pending if not future.done()]
            if abandoned:
                self._remove_when_done(abandoned, scratch_dir)

        if hooks.is_cancelled():
            raise CancellationError(
                'Report generation was cancelled before merge.',
                detail={'chunks_done': len(results), 'chunks_total': total},
            )
        self._raise_expired(deadline, {}, {}, job_timeout_seconds)

        page_count = self.merger.merge(chunks, results, context=context, output_path=output_path)
        hooks.event('merged', pages=page_count, chunks=total)
        return PipelineResult(
            page_count=page_count,
            chunk_results=sorted(results, key=lambda r: r.index),
            elapsed_seconds=time.monotonic() - started_at,
        )
