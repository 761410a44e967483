"""
Tests for the PDF chunk renderer.

Tests cover:
- Pages crowded with short items are packed onto one physical page
- A page that cannot fit at the smallest type size fails instead of overflowing
- Font selection looks at every page of a chunk
- Rows never run past the right margin
"""

from pathlib import Path

import pytest
from reportlab.pdfbase import pdfmetrics

from reportforge.report.page_index import read_pdf_text
from reportforge.report.pdf_export import (
    MIN_FONT_SIZE,
    PAGE_HEIGHT,
    PAGE_WIDTH,
    PageOverflowError,
    PdfChunkRenderer,
    _chunk_font,
    _fit_page,
    _hard_break,
    _rows_height,
)
from reportforge.report.renderers import RenderContext
from reportforge.types import Chunk, LayoutLine, PageLayout


MARGIN = 48
WIDTH = PAGE_WIDTH - 2 * MARGIN
HEIGHT = PAGE_HEIGHT - 2 * MARGIN - 32


def _checklist_page(items: int = 125, number: int = 1) -> PageLayout:
    lines: list[LayoutLine] = []
    for n in range(items):
        lines.append(LayoutLine(kind='question', text='Compliant?'))
        lines.append(LayoutLine(kind='answer', text='Closing' if n == items - 1 else 'Yes'))
    return PageLayout(number=number, lines=tuple(lines), word_count=items * 2)


def _chunk(*pages: PageLayout) -> Chunk:
    return Chunk(
        index=0,
        page_start=pages[0].number,
        page_end=pages[-1].number,
        pages=pages,
        word_count=sum(p.word_count for p in pages),
    )


def _fit(page: PageLayout):
    return _fit_page(page, font='Helvetica', body_size=10.0, heading_size=12.0, width=WIDTH, height=HEIGHT)


class TestFitPage:
    def test_short_items_are_packed_onto_the_page(self) -> None:
        rows = _fit(_checklist_page())

        assert _rows_height(rows) <= HEIGHT
        for text, size, _ in rows:
            assert size >= MIN_FONT_SIZE
            assert pdfmetrics.stringWidth(text, 'Helvetica', size) <= WIDTH
        joined = ' '.join(text for text, _, _ in rows)
        assert joined.count('Compliant?') == 125
        assert joined.rstrip().endswith('Closing')

    def test_ordinary_pages_keep_one_row_per_line(self) -> None:
        page = PageLayout(
            number=1,
            lines=(
                LayoutLine(kind='heading', text='Access Control'),
                LayoutLine(kind='question', text='Is MFA enforced?'),
                LayoutLine(kind='answer', text='Yes, for every account.'),
            ),
            word_count=9,
        )

        texts = [text for text, _, _ in _fit(page)]

        assert texts == ['Access Control', '', 'Q: Is MFA enforced?', '', 'Yes, for every account.', '']

    def test_page_that_cannot_fit_raises(self) -> None:
        page = PageLayout(
            number=3,
            lines=(LayoutLine(kind='answer', text=' '.join(['wwwwwwwwww'] * 5_000)),),
            word_count=5_000,
        )

        with pytest.raises(PageOverflowError, match='Page 3'):
            _fit(page)

    def test_long_tokens_are_cut_at_the_margin(self) -> None:
        pieces = _hard_break('x' * 400, 'Helvetica', 10.0, 100.0)

        assert ''.join(pieces) == 'x' * 400
        assert len(pieces) > 1
        assert all(pdfmetrics.stringWidth(p, 'Helvetica', 10.0) <= 100.0 for p in pieces)


class TestPdfChunkRenderer:
    def test_crowded_page_renders_every_item(self, tmp_path: Path) -> None:
        context = RenderContext(title='Controls Checklist', assessment_id='checklist', total_pages=1)
        output = tmp_path / 'chunk.pdf'

        assert PdfChunkRenderer().render(_chunk(_checklist_page()), context, output) == 1

        text = read_pdf_text(output)
        assert text.page_count == 1
        assert text.pages[0].count('Compliant?') == 125
        assert 'Closing' in text.pages[0]

    def test_overflow_leaves_no_partial_file(self, tmp_path: Path) -> None:
        crowded = PageLayout(
            number=2,
            lines=(LayoutLine(kind='answer', text=' '.join(['wwwwwwwwww'] * 5_000)),),
            word_count=5_000,
        )
        context = RenderContext(title='Overflow', assessment_id='overflow', total_pages=2)
        output = tmp_path / 'chunk.pdf'

        with pytest.raises(PageOverflowError):
            PdfChunkRenderer().render(_chunk(_checklist_page(10), crowded), context, output)
        assert not output.exists()


class TestChunkFont:
    def test_cjk_on_a_later_page_selects_the_cjk_font(self) -> None:
        first = PageLayout(number=1, lines=(LayoutLine(kind='answer', text='plain ascii'),), word_count=2)
        second = PageLayout(
            number=2,
            lines=(LayoutLine(kind='answer', text='\u6570\u636e\u52a0\u5bc6'),),
            word_count=1,
        )

        assert _chunk_font(_chunk(first, second), 'Report', 'Helvetica') == 'STSong-Light'
        assert _chunk_font(_chunk(first), 'Report', 'Helvetica') == 'Helvetica'
