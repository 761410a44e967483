"""Shared fixtures for reportforge tests.

Provides:
- Isolated ``Settings`` rooted in a tmp directory (no .env, fast timings)
- Assessment builders with an exact word total
- Fake chunk renderers (flaky, slow, cancelling) around the markdown renderer
- A ``ReportService`` wired with a recording notifier
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from reportforge.assessments import AssessmentStore
from reportforge.config import Settings, prepare_dirs
from reportforge.report.renderers import MarkdownChunkRenderer, RenderContext
from reportforge.service import ReportService
from reportforge.types import Assessment, AssessmentItem, AssessmentSection, Chunk, OutputFormat, RenderJob


# ─────────────────────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────────────────────


def build_assessment(
    assessment_id: str,
    *,
    total_words: int,
    sections: int = 4,
    items_per_section: int = 5,
    title: str = 'Vendor Risk Assessment',
) -> Assessment:
    """An assessment whose measured word count is exactly ``total_words``.

    Section titles and questions are two words each; answers absorb the rest.
    """
    item_total = sections * items_per_section
    fixed = sections * 2 + item_total * 2
    remaining = total_words - fixed
    assert remaining >= item_total, 'total_words too small for the requested shape'
    base, extra = divmod(remaining, item_total)

    built: list[AssessmentSection] = []
    counter = 0
    for s in range(sections):
        items: list[AssessmentItem] = []
        for i in range(items_per_section):
            words = base + (1 if counter < extra else 0)
            counter += 1
            items.append(
                AssessmentItem(
                    question=f'Question {s + 1}.{i + 1}',
                    answer=' '.join(f'w{s}x{i}x{n}' for n in range(words)),
                )
            )
        built.append(AssessmentSection(title=f'Section {s + 1}', items=items))
    return Assessment(id=assessment_id, title=title, sections=built)


def lookalike_assessment(assessment_id: str = 'lookalike') -> Assessment:
    """Headings, questions and answers that read like page markers (434 words)."""
    items = [
        AssessmentItem(question=f'Question {n}', answer=' '.join(f'a{n}x{k}' for k in range(40)))
        for n in range(10)
    ]
    items.insert(3, AssessmentItem(question='Page marker?', answer='## Page 7'))
    items.insert(8, AssessmentItem(question='## Page 2', answer='  ## page 12  '))
    return Assessment(
        id=assessment_id,
        title='## Page 1',
        sections=[AssessmentSection(title='## Page 4', items=items)],
    )


class RecordingNotifier:
    def __init__(self) -> None:
        self.jobs: list[RenderJob] = []
        self._lock = threading.Lock()

    def notify(self, job: RenderJob) -> None:
        with self._lock:
            self.jobs.append(job)


class FlakyRenderer(MarkdownChunkRenderer):
    """Fails chosen chunks a fixed number of times (``None`` means always)."""

    def __init__(self, failures: dict[int, int | None] | None = None):
        self.failures = dict(failures or {})
        self.calls: dict[int, int] = {}
        self._lock = threading.Lock()

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        with self._lock:
            self.calls[chunk.index] = self.calls.get(chunk.index, 0) + 1
            seen = self.calls[chunk.index]
        if chunk.index in self.failures:
            budget = self.failures[chunk.index]
            if budget is None or seen <= budget:
                raise RuntimeError(f'renderer crashed on pages {chunk.page_start}-{chunk.page_end}')
        return super().render(chunk, context, output_path)


class SlowRenderer(MarkdownChunkRenderer):
    def __init__(self, delays: dict[int, float]):
        self.delays = delays

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        delay = self.delays.get(chunk.index, 0.0)
        if delay:
            time.sleep(delay)
        return super().render(chunk, context, output_path)


class HookRenderer(MarkdownChunkRenderer):
    """Runs ``hook`` once, while rendering chunk ``at_index``."""

    def __init__(self, hook: Callable[[], None], *, at_index: int = 0):
        self.hook = hook
        self.at_index = at_index
        self.fired = False

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        if chunk.index == self.at_index and not self.fired:
            self.fired = True
            self.hook()
        return super().render(chunk, context, output_path)


def factory_for(renderer) -> Callable[[OutputFormat, Settings], object]:
    return lambda output_format, settings: renderer


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def _make(**overrides) -> Settings:
        values = dict(
            data_dir=tmp_path / 'data',
            words_per_page=262,
            sync_page_threshold=100,
            sync_timeout_seconds=60,
            max_chunk_pages=50,
            chunk_concurrency=4,
            chunk_max_attempts=3,
            chunk_retry_backoff_seconds=0.0,
            chunk_timeout_seconds=30,
            job_timeout_seconds=120,
            lease_seconds=30,
            heartbeat_interval_seconds=0.1,
            worker_poll_interval_seconds=0.05,
            default_output_format='markdown',
            notify_webhook_url=None,
        )
        values.update(overrides)
        return prepare_dirs(Settings(_env_file=None, **values))

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_service(make_settings, notifier):
    def _make(renderer=None, **overrides) -> ReportService:
        kwargs = {}
        if renderer is not None:
            kwargs['renderer_factory'] = factory_for(renderer)
        return ReportService(make_settings(**overrides), notifier=notifier, **kwargs)

    return _make


@pytest.fixture
def service(make_service) -> ReportService:
    return make_service()


@pytest.fixture
def save_assessment():
    def _save(svc: ReportService, assessment: Assessment) -> Assessment:
        AssessmentStore(svc.settings.assessments_dir()).save(assessment)
        return assessment

    return _save
