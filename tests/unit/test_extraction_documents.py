"""Unit tests for PDF/DOCX reference extraction limits and warnings."""

import time
from typing import Optional

import pytest

from litingest.config.settings import Settings
from litingest.core.errors import InvalidInputError, OperationTimeoutError, SizeLimitError
from litingest.core.models import RecordSource
from litingest.extraction.documents import (
    LOW_CONFIDENCE_WARNING,
    NO_REFERENCES_WARNING,
    DocumentReferenceExtractor,
    ExtractedText,
)

REFERENCES_TEXT = """Title page
Body text.
References
[1] Alpha B. Paper one. doi:10.1000/one
[2] Beta C. Paper two. doi:10.1000/two
[3] Gamma D. Paper three. doi:10.1000/three
"""


def text_extractor(text: str, pages: Optional[int] = 3):
    calls = []

    def extract(content: bytes, max_pages: Optional[int]) -> ExtractedText:
        calls.append(max_pages)
        return ExtractedText(text=text, total_pages=pages)

    extract.calls = calls
    return extract


def sleeping_extractor(content: bytes, max_pages: Optional[int]) -> ExtractedText:
    time.sleep(0.5)
    return ExtractedText(text="")


@pytest.mark.asyncio
async def test_pdf_extraction_high_confidence():
    """DOI-backed references come back at full confidence tagged with the format."""
    pdf = text_extractor(REFERENCES_TEXT)
    extractor = DocumentReferenceExtractor(Settings(pdf_max_pages=7), pdf_text=pdf)

    result = await extractor.extract(b"%PDF-1.4", RecordSource.PDF)

    assert [r.doi for r in result.refs] == ["10.1000/one", "10.1000/two", "10.1000/three"]
    assert all(r.source is RecordSource.PDF for r in result.refs)
    assert result.metadata.confidence == "high"
    assert result.metadata.warning is None
    assert result.metadata.total_pages == 3
    assert result.metadata.truncated is False
    # Three entries plus the trailing empty line; header and body are not counted
    assert result.metadata.extracted_lines == 4
    assert pdf.calls == [7]


@pytest.mark.asyncio
async def test_docx_has_no_page_cap():
    docx = text_extractor(REFERENCES_TEXT, pages=None)
    extractor = DocumentReferenceExtractor(Settings(), docx_text=docx)

    result = await extractor.extract(b"PK", RecordSource.DOCX)

    assert len(result.refs) == 3
    assert all(r.source is RecordSource.DOCX for r in result.refs)
    assert docx.calls == [None]


@pytest.mark.asyncio
async def test_no_references_section_warns():
    extractor = DocumentReferenceExtractor(Settings(), pdf_text=text_extractor("Just prose.\nNothing else."))

    result = await extractor.extract(b"%PDF", RecordSource.PDF)

    assert result.refs == []
    assert result.metadata.confidence == "low"
    assert result.metadata.warning == NO_REFERENCES_WARNING
    assert result.metadata.extracted_lines == 0


@pytest.mark.asyncio
async def test_structural_only_warns_low_confidence():
    text = "Body\nReferences\n1. Smith J. 2023. A Study of Something. Journal of Medicine.\n"
    extractor = DocumentReferenceExtractor(Settings(), pdf_text=text_extractor(text))

    result = await extractor.extract(b"%PDF", RecordSource.PDF)

    assert len(result.refs) == 1
    assert result.refs[0].partial
    assert result.metadata.warning == LOW_CONFIDENCE_WARNING


@pytest.mark.asyncio
async def test_size_limit():
    extractor = DocumentReferenceExtractor(
        Settings(pdf_max_size_mb=0.001), pdf_text=text_extractor(REFERENCES_TEXT)
    )

    with pytest.raises(SizeLimitError) as exc_info:
        await extractor.extract(b"x" * 2048, RecordSource.PDF)

    assert exc_info.value.code == "ERR_PDF_TOO_LARGE"


@pytest.mark.asyncio
async def test_docx_size_limit_code():
    extractor = DocumentReferenceExtractor(
        Settings(docx_max_size_mb=0.001), docx_text=text_extractor(REFERENCES_TEXT)
    )

    with pytest.raises(SizeLimitError) as exc_info:
        await extractor.extract(b"x" * 2048, RecordSource.DOCX)

    assert exc_info.value.code == "ERR_DOCX_TOO_LARGE"


@pytest.mark.asyncio
async def test_timeout():
    extractor = DocumentReferenceExtractor(
        Settings(pdf_timeout_seconds=0.05), pdf_text=sleeping_extractor
    )

    with pytest.raises(OperationTimeoutError, match="timeout"):
        await extractor.extract(b"%PDF", RecordSource.PDF)


@pytest.mark.asyncio
async def test_text_truncated_and_nul_stripped():
    text = "\x00" * 10 + REFERENCES_TEXT
    cutoff = REFERENCES_TEXT.index("[3]")
    extractor = DocumentReferenceExtractor(
        Settings(pdf_max_text_chars=cutoff), pdf_text=text_extractor(text)
    )

    result = await extractor.extract(b"%PDF", RecordSource.PDF)

    assert result.metadata.truncated is True
    assert [r.doi for r in result.refs] == ["10.1000/one", "10.1000/two"]


@pytest.mark.asyncio
async def test_disabled_format():
    extractor = DocumentReferenceExtractor(
        Settings(feature_import_pdf_bib=False), pdf_text=text_extractor(REFERENCES_TEXT)
    )

    with pytest.raises(InvalidInputError, match="disabled"):
        await extractor.extract(b"%PDF", RecordSource.PDF)


@pytest.mark.asyncio
async def test_missing_text_extractor():
    extractor = DocumentReferenceExtractor(Settings())

    with pytest.raises(InvalidInputError, match="No text extractor"):
        await extractor.extract(b"%PDF", RecordSource.PDF)


@pytest.mark.asyncio
async def test_structured_format_rejected():
    extractor = DocumentReferenceExtractor(Settings())

    with pytest.raises(InvalidInputError):
        await extractor.extract(b"TY  - JOUR", RecordSource.RIS)
