"""Locate and parse the references section of free-form document text.

Free-text citation parsing is lossy, so parsing never fails: it runs three
passes from strongest to weakest signal and labels every record with a
confidence. DOI matches are trusted fully (1.0), labelled PMIDs slightly
less (0.9), and structural matches (numbered, author-year and loose
Vancouver lines) are kept as partial records at 0.4. ``assess_confidence``
turns a batch into high/medium/low so callers can warn users to prefer
RIS or BibTeX when extraction is weak.
"""

import re
from typing import List, Optional, Sequence, Set

from ..config.settings import settings
from ..core.ids import DOI_PATTERN, normalize_doi
from ..core.models import Confidence, NormalizedRef, RecordSource
from ..core.normalization import normalize_title
from ..utils.logging import get_logger

logger = get_logger(__name__)

PMID_PATTERN = re.compile(r"\b(?:PMID|pmid)[:\s]*([1-9]\d{5,8})\b")

CITATION_STYLES = {
    "numbered": re.compile(r"^\s*(?:\[(\d+)\]|(\d+)\.)\s+(.+?)(?:\n{2,}|$)", re.MULTILINE),
    "author_year": re.compile(
        r"^([A-Z][\w'-]+(?:\s+[A-Z][\w'-]+)*)(?:,\s*[\w.\-]+)*\s*\((\d{4})\)\.?\s+(.+?)(?:\n{2,}|$)",
        re.MULTILINE,
    ),
    "vancouver_loose": re.compile(r"^\s*\d+\.\s+(.+?)(?:\n{2,}|$)", re.MULTILINE),
}

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")
TITLE_PATTERN = re.compile(r"\.\s+([^.]{10,160})\.\s+")
JOURNAL_PATTERN = re.compile(r"\b((?:[A-Z][\w&\-]*\s+)*(?:J|Journal|Rev|Res|Med)\b[A-Za-z&\s\-]*)")
LEADING_NUMBER = re.compile(r"^\s*(?:\[\d+\]|\d+\.)\s*")

DOI_CONFIDENCE = 1.0
PMID_CONFIDENCE = 0.9
STRUCTURAL_CONFIDENCE = 0.4
HIGH_CONFIDENCE_RATIO = 0.7
MEDIUM_CONFIDENCE_RATIO = 0.3

DOI_PLACEHOLDER_TITLE = "DOI Reference"
PMID_PLACEHOLDER_TITLE = "PMID Reference"


def _header_line(line: str) -> str:
    return " ".join(line.strip().lower().split())


def find_references_section(text: str, headers: Optional[Sequence[str]] = None) -> Optional[str]:
    """Return the text after the references header, or ``None`` if there is none.

    Falls back to the last 30% of lines when that tail holds at least three
    DOIs. ``None`` means "no references detected", a normal outcome.
    """
    if not text:
        return None
    wanted = [h.lower() for h in (headers or settings.reference_headers)]
    lines = re.split(r"\r?\n", text)
    for idx, line in enumerate(lines):
        normalized = _header_line(line)
        if not normalized:
            continue
        if any(normalized == h or normalized.startswith(h + ":") for h in wanted):
            return "\n".join(lines[idx + 1:])

    start = int(len(lines) * 0.7)
    tail = "\n".join(lines[start:])
    doi_count = len(DOI_PATTERN.findall(tail))
    if doi_count >= 3:
        logger.debug(f"No references header; using DOI-dense tail ({doi_count} DOIs)")
        return tail
    return None


def _dedupe_key(ref: NormalizedRef) -> str:
    if ref.doi:
        return f"doi:{normalize_doi(ref.doi)}"
    if ref.pmid:
        return f"pmid:{ref.pmid}"
    if ref.title and ref.year is not None:
        return f"t:{normalize_title(ref.title)}|y:{ref.year}"
    return f"raw:{(ref.raw_text or '')[:80]}"


def _line_at(text: str, pos: int) -> str:
    start = text.rfind("\n", 0, pos) + 1
    end = text.find("\n", pos)
    return text[start:] if end == -1 else text[start:end]


def _carve_journal(body: str, title_end: Optional[int]) -> Optional[str]:
    if title_end is not None:
        search_space = body[title_end:]
    else:
        # Skip the leading author segment.
        search_space = body.split(".", 1)[1] if "." in body else ""
    match = JOURNAL_PATTERN.search(search_space)
    if not match:
        return None
    journal = match.group(1).strip(" -&")
    return journal or None


def _structural_ref(raw: str) -> Optional[NormalizedRef]:
    body = LEADING_NUMBER.sub("", raw, count=1)
    year_match = YEAR_PATTERN.search(body)
    year = int(year_match.group(0)) if year_match else None
    title_match = TITLE_PATTERN.search(body)
    title = title_match.group(1).strip() if title_match else None
    journal = _carve_journal(body, title_match.end(1) if title_match else None)
    if not (title or journal or year):
        return None
    return NormalizedRef(
        title=title or "",
        journal=journal or "",
        year=year,
        source=RecordSource.EXTRACTED,
        partial=True,
        confidence=STRUCTURAL_CONFIDENCE,
        raw_text=raw,
    )


def parse_references(section_text: str) -> List[NormalizedRef]:
    """Parse a references section into records, strongest signals first.

    Duplicate entries within the document (same DOI, PMID, title+year or raw
    prefix) are dropped silently; the first occurrence wins.
    """
    refs: List[NormalizedRef] = []
    seen: Set[str] = set()

    def push_unique(ref: NormalizedRef) -> None:
        key = _dedupe_key(ref)
        if key not in seen:
            seen.add(key)
            refs.append(ref)

    if not section_text:
        return refs

    for match in DOI_PATTERN.finditer(section_text):
        doi = normalize_doi(match.group(0).rstrip(".,;:"))
        push_unique(
            NormalizedRef(
                title=DOI_PLACEHOLDER_TITLE,
                doi=doi,
                source=RecordSource.EXTRACTED,
                partial=False,
                confidence=DOI_CONFIDENCE,
                raw_text=_line_at(section_text, match.start()).strip(),
            )
        )

    for line in section_text.splitlines():
        if DOI_PATTERN.search(line):
            continue
        for match in PMID_PATTERN.finditer(line):
            push_unique(
                NormalizedRef(
                    title=PMID_PLACEHOLDER_TITLE,
                    pmid=match.group(1),
                    source=RecordSource.EXTRACTED,
                    partial=True,
                    confidence=PMID_CONFIDENCE,
                    raw_text=line.strip(),
                )
            )

    for style, pattern in CITATION_STYLES.items():
        for match in pattern.finditer(section_text):
            raw = match.group(0).strip()
            if not raw or DOI_PATTERN.search(raw) or PMID_PATTERN.search(raw):
                continue
            ref = _structural_ref(raw)
            if ref is not None:
                push_unique(ref)

    logger.debug(f"Parsed {len(refs)} references from {len(section_text)} characters")
    return refs


def assess_confidence(refs: Sequence[NormalizedRef]) -> Confidence:
    """Grade a batch by the share of records backed by a DOI or PMID."""
    if not refs:
        return "low"
    id_count = sum(1 for r in refs if r.doi or r.pmid)
    ratio = id_count / len(refs)
    if ratio >= HIGH_CONFIDENCE_RATIO:
        return "high"
    if ratio >= MEDIUM_CONFIDENCE_RATIO:
        return "medium"
    return "low"
