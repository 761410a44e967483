"""Reassemble independently rendered chunks into one report.

The merger only runs once every chunk has succeeded. It checks that the
result set matches the split exactly, concatenates in index order, and
renumbers page references against global positions.
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path

from pypdf import PdfReader, PdfWriter

from reportforge.errors import MergeError
from reportforge.report.artifact_check import validate_merged_artifact
from reportforge.report.page_index import PAGE_HEADING_PATTERN
from reportforge.report.pdf_export import build_page_number_overlay
from reportforge.report.renderers import RenderContext
from reportforge.types import Chunk, ChunkResult, OutputFormat


logger = logging.getLogger(__name__)


def order_results(chunks: list[Chunk], results: list[ChunkResult]) -> list[ChunkResult]:
    """Match results to chunks one-to-one, in split order."""
    expected = [chunk.index for chunk in chunks]
    if expected != list(range(len(chunks))):
        raise MergeError(
            'Chunk split is not a contiguous index sequence.',
            detail={'indices': expected[:20]},
        )

    by_index: dict[int, ChunkResult] = {}
    for result in results:
        if result.index < 0 or result.index >= len(chunks):
            raise MergeError(
                f'Chunk result index {result.index} is outside 0..{len(chunks) - 1}.',
                detail={'chunk_index': result.index},
            )
        if result.index in by_index:
            raise MergeError(
                f'Chunk {result.index} was produced more than once.',
                detail={'chunk_index': result.index},
            )
        by_index[result.index] = result

    missing = [index for index in expected if index not in by_index]
    if missing:
        raise MergeError(
            f'Missing chunk results: {missing[:20]}',
            detail={'missing': missing},
        )

    ordered: list[ChunkResult] = []
    for chunk in chunks:
        result = by_index[chunk.index]
        if result.page_count != chunk.page_count:
            raise MergeError(
                f'Chunk {chunk.index} rendered {result.page_count} pages, expected {chunk.page_count}.',
                detail={'chunk_index': chunk.index},
            )
        if not Path(result.path).exists():
            raise MergeError(
                f'Chunk {chunk.index} output is missing: {result.path}',
                detail={'chunk_index': chunk.index},
            )
        ordered.append(result)
    return ordered


def _section_refs(chunks: list[Chunk]) -> list[tuple[str, int]]:
    refs: list[tuple[str, int]] = []
    for chunk in chunks:
        for page in chunk.pages:
            for title in page.sections:
                refs.append((title, page.number))
    return refs


class ChunkMerger:
    def __init__(self, output_format: OutputFormat, *, font_name: str = 'Helvetica', margin: int = 48):
        self.output_format = output_format
        self.font_name = font_name
        self.margin = margin

    def merge(
        self,
        chunks: list[Chunk],
        results: list[ChunkResult],
        *,
        context: RenderContext,
        output_path: Path,
    ) -> int:
        ordered = order_results(chunks, results)
        total_pages = sum(chunk.page_count for chunk in chunks)
        if total_pages != context.total_pages:
            raise MergeError(
                f'Split covers {total_pages} pages, layout has {context.total_pages}.',
                detail={'split_pages': total_pages, 'layout_pages': context.total_pages},
            )

        output_path.parent.mkdir(parents=True, exist_ok=True)
        if self.output_format is OutputFormat.markdown:
            self._merge_markdown(chunks, ordered, context=context, output_path=output_path)
        else:
            self._merge_pdf(chunks, ordered, context=context, output_path=output_path)

        validation = validate_merged_artifact(
            path=output_path,
            output_format=self.output_format,
            expected_pages=total_pages,
        )
        if not validation.ok:
            raise MergeError(
                validation.message,
                detail={'reason': validation.reason, 'page_count': validation.page_count},
            )
        logger.info('Merged %s chunks into %s (%s pages)', len(ordered), output_path, total_pages)
        return validation.page_count

    def _merge_markdown(
        self,
        chunks: list[Chunk],
        ordered: list[ChunkResult],
        *,
        context: RenderContext,
        output_path: Path,
    ) -> None:
        with output_path.open('w', encoding='utf-8') as out:
            out.write(f'# {context.title}\n\n')
            refs = _section_refs(chunks)
            if refs:
                out.write('## Contents\n\n')
                for title, page in refs:
                    out.write(f'- {title} (p. {page})\n')
                out.write('\n')

            for chunk, result in zip(chunks, ordered):
                text = Path(result.path).read_text(encoding='utf-8')
                local_numbers = [int(m.group(1)) for m in PAGE_HEADING_PATTERN.finditer(text)]
                if local_numbers != list(range(1, chunk.page_count + 1)):
                    raise MergeError(
                        f'Chunk {chunk.index} has inconsistent page headings.',
                        detail={'chunk_index': chunk.index},
                    )
                offset = chunk.page_start - 1

                def renumber(match: re.Match[str]) -> str:
                    return f'## Page {int(match.group(1)) + offset}'

                out.write(PAGE_HEADING_PATTERN.sub(renumber, text))

    def _merge_pdf(
        self,
        chunks: list[Chunk],
        ordered: list[ChunkResult],
        *,
        context: RenderContext,
        output_path: Path,
    ) -> None:
        writer = PdfWriter()
        for chunk, result in zip(chunks, ordered):
            reader = PdfReader(result.path)
            if len(reader.pages) != chunk.page_count:
                raise MergeError(
                    f'Chunk {chunk.index} PDF has {len(reader.pages)} pages, expected {chunk.page_count}.',
                    detail={'chunk_index': chunk.index},
                )
            for page in reader.pages:
                writer.add_page(page)

        overlay = PdfReader(
            io.BytesIO(
                build_page_number_overlay(
                    len(writer.pages),
                    font_name=self.font_name,
                    margin=self.margin,
                )
            )
        )
        for page, footer in zip(writer.pages, overlay.pages):
            page.merge_page(footer)

        for title, page_number in _section_refs(chunks):
            writer.add_outline_item(title, page_number - 1)

        writer.add_metadata({'/Title': context.title, '/Subject': context.assessment_id})
        with output_path.open('wb') as f:
            writer.write(f)
