"""
Tests for the chunk pipeline.

Tests cover:
- Happy path with progress callbacks
- Per-chunk retries with backoff, and permanent failure naming the chunk
- Cancellation between chunk submissions
- Per-chunk and per-job wall-clock ceilings
"""

import time
from pathlib import Path

import pytest

from conftest import FlakyRenderer, SlowRenderer, build_assessment
from reportforge.errors import CancellationError, ChunkRenderError, RenderTimeoutError
from reportforge.layout import paginate, split_into_chunks
from reportforge.pipeline import ChunkPipeline, PipelineHooks
from reportforge.report.merge import ChunkMerger
from reportforge.report.page_index import count_markdown_pages
from reportforge.report.renderers import MarkdownChunkRenderer, RenderContext
from reportforge.types import OutputFormat


def _chunks(pages: int = 40, per_chunk: int = 5):
    assessment = build_assessment('pipe', total_words=pages * 50)
    layout = paginate(assessment, words_per_page=50)
    chunks = split_into_chunks(layout, max_pages=per_chunk)
    context = RenderContext(title=assessment.title, assessment_id=assessment.id, total_pages=len(layout))
    return chunks, context


def _pipeline(renderer, **kwargs) -> ChunkPipeline:
    kwargs.setdefault('concurrency', 3)
    kwargs.setdefault('max_attempts', 3)
    kwargs.setdefault('backoff_seconds', 0.0)
    return ChunkPipeline(renderer, ChunkMerger(OutputFormat.markdown), **kwargs)


class TestChunkPipeline:
    def test_renders_and_merges(self, tmp_path: Path) -> None:
        chunks, context = _chunks()
        progress: list[tuple[int, int]] = []
        events: list[str] = []

        result = _pipeline(MarkdownChunkRenderer()).run(
            chunks,
            context=context,
            work_dir=tmp_path,
            output_path=tmp_path / 'merged.md',
            hooks=PipelineHooks(
                on_progress=lambda done, total: progress.append((done, total)),
                on_event=lambda name, **fields: events.append(name),
            ),
        )

        assert result.page_count == 40
        assert count_markdown_pages(tmp_path / 'merged.md') == 40
        assert [r.index for r in result.chunk_results] == list(range(8))
        assert progress[-1] == (8, 8)
        assert [done for done, _ in progress] == list(range(1, 9))
        assert events.count('chunk_rendered') == 8
        assert events[-1] == 'merged'

    def test_transient_failure_is_retried(self, tmp_path: Path) -> None:
        chunks, context = _chunks()
        renderer = FlakyRenderer({3: 2})
        events: list[dict] = []

        result = _pipeline(renderer).run(
            chunks,
            context=context,
            work_dir=tmp_path,
            output_path=tmp_path / 'merged.md',
            hooks=PipelineHooks(on_event=lambda name, **fields: events.append({'name': name, **fields})),
        )

        assert result.page_count == 40
        assert renderer.calls[3] == 3
        assert result.chunk_results[3].attempts == 3
        failed = [e for e in events if e['name'] == 'chunk_attempt_failed']
        assert [e['attempt'] for e in failed] == [1, 2]
        assert all(e['chunk_index'] == 3 for e in failed)

    def test_permanent_failure_names_the_chunk(self, tmp_path: Path) -> None:
        chunks, context = _chunks()
        renderer = FlakyRenderer({4: None})

        with pytest.raises(ChunkRenderError) as exc_info:
            _pipeline(renderer).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
            )

        err = exc_info.value
        assert err.chunk_index == 4
        assert err.attempts == 3
        assert 'pages 21-25' in err.message
        assert err.detail['page_start'] == 21
        assert not (tmp_path / 'merged.md').exists()

    def test_cancel_stops_new_submissions(self, tmp_path: Path) -> None:
        chunks, context = _chunks()
        renderer = FlakyRenderer()
        cancelled = {'flag': False}

        def on_progress(done: int, total: int) -> None:
            if done >= 2:
                cancelled['flag'] = True

        with pytest.raises(CancellationError):
            _pipeline(renderer, concurrency=1).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
                hooks=PipelineHooks(is_cancelled=lambda: cancelled['flag'], on_progress=on_progress),
            )

        assert sum(renderer.calls.values()) == 2
        assert not (tmp_path / 'merged.md').exists()

    def test_cancel_before_start(self, tmp_path: Path) -> None:
        chunks, context = _chunks()
        renderer = FlakyRenderer()

        with pytest.raises(CancellationError):
            _pipeline(renderer).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
                hooks=PipelineHooks(is_cancelled=lambda: True),
            )
        assert renderer.calls == {}


class TestCeilings:
    def test_slow_chunk_hits_chunk_timeout(self, tmp_path: Path) -> None:
        chunks, context = _chunks(pages=10, per_chunk=5)

        started = time.monotonic()
        with pytest.raises(RenderTimeoutError) as exc_info:
            _pipeline(SlowRenderer({1: 2.0}), chunk_timeout_seconds=0.3).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
            )

        assert time.monotonic() - started < 1.5
        assert exc_info.value.scope == 'chunk'
        assert exc_info.value.chunk_index == 1
        assert exc_info.value.kind == 'TimeoutError'

    def test_job_deadline(self, tmp_path: Path) -> None:
        chunks, context = _chunks(pages=10, per_chunk=5)

        with pytest.raises(RenderTimeoutError) as exc_info:
            _pipeline(SlowRenderer({0: 2.0, 1: 2.0})).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
                deadline=time.monotonic() + 0.3,
                job_timeout_seconds=0.3,
            )

        assert exc_info.value.scope == 'job'
        assert exc_info.value.limit_seconds == 0.3
        assert isinstance(exc_info.value, TimeoutError)

    def test_abandoned_render_leaves_no_scratch_files(self, tmp_path: Path) -> None:
        chunks, context = _chunks(pages=10, per_chunk=5)
        scratch = tmp_path / 'chunks'

        with pytest.raises(RenderTimeoutError):
            _pipeline(SlowRenderer({1: 0.6}), chunk_timeout_seconds=0.2).run(
                chunks,
                context=context,
                work_dir=tmp_path,
                output_path=tmp_path / 'merged.md',
            )
        assert scratch.exists()

        # the slow render still writes its chunk file before returning
        limit = time.monotonic() + 5.0
        while scratch.exists() and time.monotonic() < limit:
            time.sleep(0.05)
        assert not scratch.exists()
