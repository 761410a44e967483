from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from reportforge.report.page_index import count_pdf_pages, page_numbers
from reportforge.types import OutputFormat


@dataclass
class ArtifactValidation:
    ok: bool
    reason: str | None
    message: str
    page_count: int
    missing_pages: list[int] = field(default_factory=list)
    unexpected_pages: list[int] = field(default_factory=list)


def _validate_markdown(path: Path, expected_pages: int) -> ArtifactValidation:
    numbers = page_numbers(path.read_text(encoding='utf-8'))
    expected = list(range(1, expected_pages + 1))
    if numbers == expected:
        return ArtifactValidation(ok=True, reason=None, message='ok', page_count=len(numbers))

    seen = set(numbers)
    missing = [n for n in expected if n not in seen]
    unexpected = sorted({n for n in numbers if n < 1 or n > expected_pages})
    if len(numbers) != len(seen):
        reason = 'duplicate_pages'
        message = 'Merged report repeats page numbers.'
    elif missing or unexpected:
        reason = 'page_set_mismatch'
        message = (
            f'Merged report has {len(numbers)} pages, expected {expected_pages}; '
            f'missing={missing[:10]} unexpected={unexpected[:10]}'
        )
    else:
        reason = 'page_order_mismatch'
        message = 'Merged report pages are out of order.'
    return ArtifactValidation(
        ok=False,
        reason=reason,
        message=message,
        page_count=len(numbers),
        missing_pages=missing,
        unexpected_pages=unexpected,
    )


def _validate_pdf(path: Path, expected_pages: int) -> ArtifactValidation:
    count = count_pdf_pages(path)
    if count != expected_pages:
        return ArtifactValidation(
            ok=False,
            reason='page_count_mismatch',
            message=f'Merged PDF has {count} pages, expected {expected_pages}.',
            page_count=count,
        )
    return ArtifactValidation(ok=True, reason=None, message='ok', page_count=count)


def validate_merged_artifact(
    *,
    path: Path,
    output_format: OutputFormat,
    expected_pages: int,
) -> ArtifactValidation:
    if not path.exists() or path.stat().st_size <= 0:
        return ArtifactValidation(
            ok=False,
            reason='artifact_missing',
            message=f'Merged report is missing or empty: {path}',
            page_count=0,
        )
    if output_format is OutputFormat.markdown:
        return _validate_markdown(path, expected_pages)
    return _validate_pdf(path, expected_pages)
