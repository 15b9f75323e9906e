"""Reference extraction from PDF and DOCX uploads.

Binary parsing is delegated to injected text extractors; this module enforces
the per-format size, character and time limits around them and runs the
reference parser over the resulting text.
"""

import asyncio
from typing import Callable, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from ..config.settings import Settings
from ..core.errors import InvalidInputError, OperationTimeoutError, SizeLimitError
from ..core.models import Confidence, NormalizedRef, RecordSource
from ..utils.logging import get_logger
from .references import assess_confidence, find_references_section, parse_references

logger = get_logger(__name__)

NO_REFERENCES_WARNING = "No references section detected"
LOW_CONFIDENCE_WARNING = "Low confidence; prefer RIS/BibTeX for accuracy"


class ExtractedText(BaseModel):
    """Raw text produced by a format-specific text extractor."""
    text: str
    total_pages: Optional[int] = None


# (file bytes, max pages or None) -> ExtractedText; runs in a worker thread.
TextExtractor = Callable[[bytes, Optional[int]], ExtractedText]


class ExtractionMetadata(BaseModel):
    total_pages: Optional[int] = None
    extracted_lines: int = 0
    truncated: bool = False
    confidence: Confidence = "low"
    warning: Optional[str] = None


class DocumentExtraction(BaseModel):
    refs: List[NormalizedRef] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)


class _FormatLimits(NamedTuple):
    max_bytes: int
    max_chars: int
    timeout: float
    max_pages: Optional[int]
    enabled: bool
    too_large_code: str


class DocumentReferenceExtractor:
    """Extract references from PDF/DOCX bytes within configured limits."""

    def __init__(
        self,
        settings: Settings,
        pdf_text: Optional[TextExtractor] = None,
        docx_text: Optional[TextExtractor] = None,
    ) -> None:
        self.settings = settings
        self._extractors: Dict[RecordSource, Optional[TextExtractor]] = {
            RecordSource.PDF: pdf_text,
            RecordSource.DOCX: docx_text,
        }

    def _limits(self, fmt: RecordSource) -> _FormatLimits:
        s = self.settings
        if fmt is RecordSource.PDF:
            return _FormatLimits(
                int(s.pdf_max_size_mb * 1024 * 1024),
                s.pdf_max_text_chars,
                s.pdf_timeout_seconds,
                s.pdf_max_pages,
                s.feature_import_pdf_bib,
                "ERR_PDF_TOO_LARGE",
            )
        if fmt is RecordSource.DOCX:
            return _FormatLimits(
                int(s.docx_max_size_mb * 1024 * 1024),
                s.docx_max_text_chars,
                s.docx_timeout_seconds,
                None,
                s.feature_import_docx_bib,
                "ERR_DOCX_TOO_LARGE",
            )
        raise InvalidInputError(f"Unsupported document format: {fmt.value}")

    async def extract(self, content: bytes, fmt: RecordSource) -> DocumentExtraction:
        """Run text extraction and reference parsing for one document.

        Raises:
            InvalidInputError: format disabled or no text extractor configured
            SizeLimitError: file larger than the format's cap
            OperationTimeoutError: text extraction exceeded its budget
        """
        limits = self._limits(fmt)
        if not limits.enabled:
            raise InvalidInputError(f"{fmt.value.upper()} reference import is disabled")
        extractor = self._extractors.get(fmt)
        if extractor is None:
            raise InvalidInputError(f"No text extractor configured for {fmt.value}")
        if len(content) > limits.max_bytes:
            raise SizeLimitError(
                f"{fmt.value.upper()} exceeds {limits.max_bytes // (1024 * 1024)}MB limit",
                code=limits.too_large_code,
                details={"size": len(content), "max_bytes": limits.max_bytes},
            )

        try:
            extracted = await asyncio.wait_for(
                asyncio.to_thread(extractor, content, limits.max_pages),
                timeout=limits.timeout,
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                f"{fmt.value.upper()} parsing timeout after {limits.timeout}s",
                details={"format": fmt.value, "timeout": limits.timeout},
            ) from e

        text = extracted.text.replace("\x00", "")
        truncated = len(text) > limits.max_chars
        if truncated:
            logger.warning(
                f"{fmt.value} text truncated to {limits.max_chars} characters",
                extra={"original_chars": len(text)},
            )
            text = text[: limits.max_chars]

        return self._from_text(text, fmt, extracted.total_pages, truncated)

    def _from_text(
        self, text: str, fmt: RecordSource, total_pages: Optional[int], truncated: bool
    ) -> DocumentExtraction:
        metadata = ExtractionMetadata(
            total_pages=total_pages,
            truncated=truncated,
        )
        section = find_references_section(text, self.settings.reference_headers)
        if section is None:
            metadata.warning = NO_REFERENCES_WARNING
            return DocumentExtraction(refs=[], metadata=metadata)

        metadata.extracted_lines = len(section.split("\n"))

        refs = [r.model_copy(update={"source": fmt}) for r in parse_references(section)]
        metadata.confidence = assess_confidence(refs)
        if metadata.confidence == "low":
            metadata.warning = LOW_CONFIDENCE_WARNING
        logger.info(
            f"Extracted {len(refs)} references from {fmt.value}",
            extra={"confidence": metadata.confidence, "truncated": truncated},
        )
        return DocumentExtraction(refs=refs, metadata=metadata)
