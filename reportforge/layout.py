"""Cheap size estimation, flow pagination and chunk splitting.

Pagination is a word-flow pass: every page holds exactly ``words_per_page``
words except the last one, so the page count of an assessment is known
without rendering anything.
"""

from __future__ import annotations

import math
from typing import Iterator

from .errors import SizeEstimationError
from .types import Assessment, Chunk, LayoutLine, PageLayout, SizeEstimate


def count_words(text: str) -> int:
    return len(str(text or '').split())


def _iter_blocks(assessment: Assessment) -> Iterator[tuple[str, str, str]]:
    for section in assessment.sections:
        yield 'heading', section.title, section.title
        for item in section.items:
            yield 'question', item.question, section.title
            yield 'answer', item.answer, section.title


def estimate_size(assessment: Assessment, *, words_per_page: int) -> SizeEstimate:
    if words_per_page <= 0:
        raise SizeEstimationError(f'words_per_page must be positive, got {words_per_page}')
    if not assessment.sections:
        raise SizeEstimationError(
            f'Assessment {assessment.id} has no sections to measure.',
            detail={'assessment_id': assessment.id},
        )

    word_count = 0
    item_count = 0
    for kind, text, _ in _iter_blocks(assessment):
        word_count += count_words(text)
        if kind == 'question':
            item_count += 1

    if word_count <= 0:
        raise SizeEstimationError(
            f'Assessment {assessment.id} has no measurable content.',
            detail={'assessment_id': assessment.id},
        )

    return SizeEstimate(
        word_count=word_count,
        page_count=math.ceil(word_count / words_per_page),
        words_per_page=words_per_page,
        section_count=len(assessment.sections),
        item_count=item_count,
    )


def paginate(assessment: Assessment, *, words_per_page: int) -> list[PageLayout]:
    if words_per_page <= 0:
        raise SizeEstimationError(f'words_per_page must be positive, got {words_per_page}')

    pages: list[PageLayout] = []
    lines: list[LayoutLine] = []
    sections: list[str] = []
    used = 0

    def flush() -> None:
        nonlocal lines, sections, used
        pages.append(
            PageLayout(
                number=len(pages) + 1,
                lines=tuple(lines),
                sections=tuple(sections),
                word_count=used,
            )
        )
        lines = []
        sections = []
        used = 0

    for kind, text, _ in _iter_blocks(assessment):
        words = str(text or '').split()
        if not words:
            continue
        if kind == 'heading':
            if used >= words_per_page:
                flush()
            sections.append(' '.join(words))
        cursor = 0
        while cursor < len(words):
            if used >= words_per_page:
                flush()
            take = min(words_per_page - used, len(words) - cursor)
            lines.append(LayoutLine(kind=kind, text=' '.join(words[cursor:cursor + take])))
            used += take
            cursor += take

    if used > 0:
        flush()
    return pages


def split_into_chunks(
    pages: list[PageLayout],
    *,
    max_pages: int,
    max_words: int = 0,
) -> list[Chunk]:
    if max_pages <= 0:
        raise ValueError(f'max_pages must be positive, got {max_pages}')

    chunks: list[Chunk] = []
    current: list[PageLayout] = []
    current_words = 0

    def close() -> None:
        nonlocal current, current_words
        chunks.append(
            Chunk(
                index=len(chunks),
                page_start=current[0].number,
                page_end=current[-1].number,
                pages=tuple(current),
                word_count=current_words,
            )
        )
        current = []
        current_words = 0

    for page in pages:
        if current and (
            len(current) >= max_pages
            or (max_words > 0 and current_words + page.word_count > max_words)
        ):
            close()
        current.append(page)
        current_words += page.word_count

    if current:
        close()
    return chunks
