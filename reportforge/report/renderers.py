from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from reportforge.config import Settings
from reportforge.report.page_index import PAGE_HEADING_PATTERN
from reportforge.types import Chunk, LayoutLine, OutputFormat


@dataclass(frozen=True)
class RenderContext:
    title: str
    assessment_id: str
    total_pages: int


class ChunkRenderer(Protocol):
    output_format: OutputFormat

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        """Render ``chunk`` into ``output_path`` and return the number of pages written."""
        ...


def format_line_markdown(line: LayoutLine) -> str:
    if line.kind == 'heading':
        return f'### {line.text}'
    if line.kind == 'question':
        return f'**Q:** {line.text}'
    # page markers are reserved for the renderer
    if PAGE_HEADING_PATTERN.match(line.text):
        return '\\' + line.text.lstrip()
    return line.text


class MarkdownChunkRenderer:
    """Writes chunk-local ``## Page k`` blocks; the merger renumbers them."""

    output_format = OutputFormat.markdown

    def render(self, chunk: Chunk, context: RenderContext, output_path: Path) -> int:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open('w', encoding='utf-8') as f:
            for local, page in enumerate(chunk.pages, start=1):
                f.write(f'## Page {local}\n\n')
                for line in page.lines:
                    f.write(format_line_markdown(line) + '\n\n')
        return len(chunk.pages)


def build_renderer(output_format: OutputFormat, settings: Settings) -> ChunkRenderer:
    if output_format is OutputFormat.markdown:
        return MarkdownChunkRenderer()
    from reportforge.report.pdf_export import PdfChunkRenderer

    return PdfChunkRenderer(
        font_name=settings.pdf_font_name,
        title_font_size=settings.pdf_title_font_size,
        body_font_size=settings.pdf_body_font_size,
        margin=settings.pdf_page_margin,
    )
