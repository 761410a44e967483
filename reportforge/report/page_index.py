from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from pypdf import PdfReader


PAGE_HEADING_PATTERN = re.compile(r'(?im)^\s*##\s*page\s+(\d+)\s*$')


@dataclass
class PdfText:
    pages: list[str]

    @property
    def page_count(self) -> int:
        return len(self.pages)


def read_pdf_text(path: Path) -> PdfText:
    reader = PdfReader(str(path))
    pages: list[str] = []
    for page in reader.pages:
        pages.append((page.extract_text() or '').strip())
    return PdfText(pages=pages)


def count_pdf_pages(path: Path) -> int:
    return len(PdfReader(str(path)).pages)


def page_numbers(markdown: str) -> list[int]:
    return [int(match.group(1)) for match in PAGE_HEADING_PATTERN.finditer(markdown or '')]


def build_page_index(markdown: str) -> dict[int, list[str]]:
    matches = list(PAGE_HEADING_PATTERN.finditer(markdown or ''))
    mapped: dict[int, list[str]] = {}
    for idx, match in enumerate(matches):
        start = match.end()
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(markdown)
        body = (markdown[start:end] or '').strip()
        page = int(match.group(1))
        lines = [line.strip() for line in body.splitlines() if line.strip()]
        mapped[page] = lines
    return mapped


def count_markdown_pages(path: Path) -> int:
    return len(page_numbers(path.read_text(encoding='utf-8')))
