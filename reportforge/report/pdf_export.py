from __future__ import annotations

import io
from pathlib import Path

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfgen import canvas as pdf_canvas

from reportforge.report.renderers import RenderContext
from reportforge.types import Chunk, LayoutLine, OutputFormat, PageLayout


PAGE_WIDTH, PAGE_HEIGHT = A4
MIN_FONT_SIZE = 4.0
FOOTER_FONT_SIZE = 8
DENSE_SEPARATOR = ' | '

Row = tuple[str, float, float]


class PageOverflowError(ValueError):
    """A layout page cannot be drawn on one physical page."""


def _contains_cjk(text: str) -> bool:
    for ch in text:
        if '\u4e00' <= ch <= '\u9fff':
            return True
    return False


def _pick_font(text: str, preferred: str) -> str:
    if _contains_cjk(text):
        try:
            pdfmetrics.registerFont(UnicodeCIDFont('STSong-Light'))
            return 'STSong-Light'
        except Exception:
            return preferred
    return preferred


def _chunk_font(chunk: Chunk, title: str, preferred: str) -> str:
    for text in [title] + [line.text for page in chunk.pages for line in page.lines]:
        if _contains_cjk(text):
            return _pick_font(text, preferred)
    return preferred


def _line_prefix(line: LayoutLine) -> str:
    if line.kind == 'question':
        return 'Q: '
    return ''


def _hard_break(text: str, font: str, size: float, width: float) -> list[str]:
    """Cut rows that have no break opportunity (long tokens, CJK runs) at the margin."""
    pieces: list[str] = []
    while text and pdfmetrics.stringWidth(text, font, size) > width:
        lo, hi = 1, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if pdfmetrics.stringWidth(text[:mid], font, size) <= width:
                lo = mid
            else:
                hi = mid - 1
        pieces.append(text[:lo])
        text = text[lo:]
    pieces.append(text)
    return pieces


def _split_text(text: str, font: str, size: float, width: float) -> list[str]:
    rows: list[str] = []
    for wrapped in simpleSplit(text, font, size, width) or ['']:
        rows.extend(_hard_break(wrapped, font, size, width))
    return rows


def _wrap_page(
    page: PageLayout,
    *,
    font: str,
    body_size: float,
    heading_size: float,
    width: float,
    dense: bool = False,
) -> list[Row]:
    if dense:
        text = DENSE_SEPARATOR.join(_line_prefix(line) + line.text for line in page.lines)
        return [(row, body_size, body_size * 1.2) for row in _split_text(text, font, body_size, width)]

    rows: list[Row] = []
    for line in page.lines:
        size = heading_size if line.kind == 'heading' else body_size
        leading = size * 1.35
        for wrapped in _split_text(_line_prefix(line) + line.text, font, size, width):
            rows.append((wrapped, size, leading))
        rows.append(('', size, leading * 0.4))
    return rows


def _rows_height(rows: list[Row]) -> float:
    return sum(leading for _, _, leading in rows)


def _fit_page(
    page: PageLayout,
    *,
    font: str,
    body_size: float,
    heading_size: float,
    width: float,
    height: float,
) -> list[Row]:
    """Shrink the type until the page content fits in one physical page.

    Lines keep their own rows while that fits at ``MIN_FONT_SIZE`` or above.
    Otherwise they run together as one paragraph, which is shrunk the same
    way. A page that fits neither way raises ``PageOverflowError``: rows are
    never drawn past the bottom margin.
    """
    floor = min(1.0, MIN_FONT_SIZE / body_size)
    for dense in (False, True):
        scale = 1.0
        while True:
            rows = _wrap_page(
                page,
                font=font,
                body_size=body_size * scale,
                heading_size=heading_size * scale,
                width=width,
                dense=dense,
            )
            if _rows_height(rows) <= height:
                return rows
            if scale <= floor:
                break
            scale = max(scale * 0.9, floor)
    raise PageOverflowError(
        f'Page {page.number} needs {_rows_height(rows):.0f}pt at {MIN_FONT_SIZE:g}pt type; '
        f'{height:.0f}pt available.'
    )


class PdfChunkRenderer:
    """Draws exactly one PDF page per layout page.

    Page numbers are left off: they are stamped on the merged document where
    global positions are known.
    """

    output_format = OutputFormat.pdf

    def __init__(
        self,
        *,
        font_name: str = 'Helvetica',
        title_font_size: int = 15,
        body_font_size: int = 10,
        margin: int = 48,
    ):
        self.font_name = font_name
        self.title_font_size = title_font_size
        self.body_font_size = body_font_size
        self.margin = margin

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        font = _chunk_font(chunk, context.title, self.font_name)
        width = PAGE_WIDTH - 2 * self.margin
        top = PAGE_HEIGHT - self.margin
        # reserve room for the running header and the stamped footer
        height = PAGE_HEIGHT - 2 * self.margin - 2 * FOOTER_FONT_SIZE * 2
        heading_size = float(max(self.body_font_size, int(self.title_font_size * 0.82)))

        # lay out every page before drawing so an overflow leaves no partial file
        laid_out = [
            _fit_page(
                page,
                font=font,
                body_size=float(self.body_font_size),
                heading_size=heading_size,
                width=width,
                height=height,
            )
            for page in chunk.pages
        ]
        header = _hard_break(context.title, font, FOOTER_FONT_SIZE, width)[0]

        output_path.parent.mkdir(parents=True, exist_ok=True)
        pdf = pdf_canvas.Canvas(str(output_path), pagesize=A4)
        pdf.setTitle(context.title)
        pdf.setSubject(f'{context.assessment_id} pages {chunk.page_start}-{chunk.page_end}')
        for rows in laid_out:
            pdf.setFont(font, FOOTER_FONT_SIZE)
            pdf.drawString(self.margin, top, header)
            cursor = top - FOOTER_FONT_SIZE * 3
            for text, size, leading in rows:
                if text:
                    pdf.setFont(font, size)
                    pdf.drawString(self.margin, cursor, text)
                cursor -= leading
            pdf.showPage()
        pdf.save()
        return len(chunk.pages)


def build_page_number_overlay(
    total_pages: int,
    *,
    font_name: str = 'Helvetica',
    margin: int = 48,
) -> bytes:
    """One footer-only page per report page, merged onto the final document."""
    buffer = io.BytesIO()
    pdf = pdf_canvas.Canvas(buffer, pagesize=A4)
    for number in range(1, total_pages + 1):
        pdf.setFont(font_name, FOOTER_FONT_SIZE)
        pdf.drawRightString(PAGE_WIDTH - margin, margin / 2, f'Page {number} of {total_pages}')
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()
