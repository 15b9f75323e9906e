"""RIS and BibTeX import parsers."""

import re
from datetime import date
from pathlib import PurePath
from typing import Dict, List, Optional, Union

import bibtexparser
from bibtexparser.bparser import BibTexParser
from bibtexparser.customization import convert_to_unicode

from ..core.errors import InvalidInputError, SizeLimitError
from ..core.models import NormalizedRef, RecordSource
from ..utils.logging import get_logger

logger = get_logger(__name__)

EXTENSION_FORMATS = {
    ".ris": RecordSource.RIS,
    ".bib": RecordSource.BIBTEX,
    ".bibtex": RecordSource.BIBTEX,
    ".pdf": RecordSource.PDF,
    ".docx": RecordSource.DOCX,
}
STRUCTURED_FORMATS = (RecordSource.RIS, RecordSource.BIBTEX)

_RIS_LINE = re.compile(r"^([A-Z][A-Z0-9]{1,3})\s+-\s?(.*)$")
_YEAR = re.compile(r"\b(\d{4})\b")
_BRACES = re.compile(r"[{}]")


def detect_format(filename: str) -> RecordSource:
    """Map a filename's extension to its import format."""
    suffix = PurePath(filename).suffix.lower()
    fmt = EXTENSION_FORMATS.get(suffix)
    if fmt is None:
        raise InvalidInputError(
            f"Unsupported file format: {suffix or filename}",
            details={"filename": filename, "supported": sorted(EXTENSION_FORMATS)},
        )
    return fmt


def _parse_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _YEAR.search(value)
    if not match:
        return None
    year = int(match.group(1))
    if year < 1800 or year > date.today().year + 1:
        return None
    return year


def _complete(
    title: str, journal: str, year: Optional[int], authors: List[str]
) -> bool:
    return bool(title and journal and year is not None and authors)


def parse_ris(content: str) -> List[NormalizedRef]:
    """Parse RIS records (``TY  -`` ... ``ER  -``); incomplete records are dropped."""
    records: List[Dict[str, List[str]]] = []
    current: Dict[str, List[str]] = {}
    for line in content.splitlines():
        match = _RIS_LINE.match(line.strip())
        if not match:
            continue
        tag, value = match.group(1), match.group(2).strip()
        if tag == "TY":
            if current:
                records.append(current)
            current = {"TY": [value]}
        elif tag == "ER":
            if current:
                records.append(current)
            current = {}
        else:
            current.setdefault(tag, []).append(value)
    if current:
        records.append(current)

    refs = [r for r in (_ris_record(rec) for rec in records) if r is not None]
    logger.info(f"Parsed {len(refs)} of {len(records)} RIS records")
    return refs


def _ris_record(record: Dict[str, List[str]]) -> Optional[NormalizedRef]:
    def first(*tags: str) -> str:
        for tag in tags:
            values = record.get(tag)
            if values and values[0]:
                return values[0]
        return ""

    title = first("TI", "T1")
    journal = first("T2", "JO", "JA")
    year = _parse_year(first("PY", "Y1"))
    authors = [a for a in (record.get("AU") or record.get("A1") or []) if a]
    if not _complete(title, journal, year, authors):
        return None
    return NormalizedRef(
        title=title,
        journal=journal,
        year=year,
        authors=authors,
        doi=first("DO") or None,
        pmid=first("PMID", "AN") or None,
        abstract=first("AB", "N2") or None,
        source=RecordSource.RIS,
    )


def _strip_braces(value: Optional[str]) -> str:
    return _BRACES.sub("", value or "").strip()


def parse_bibtex(content: str) -> List[NormalizedRef]:
    """Parse BibTeX entries; incomplete entries are dropped."""
    parser = BibTexParser(common_strings=True)
    parser.customization = convert_to_unicode
    try:
        database = bibtexparser.loads(content, parser=parser)
    except Exception as e:
        raise InvalidInputError(f"Failed to parse BibTeX: {e}") from e

    refs: List[NormalizedRef] = []
    for entry in database.entries:
        title = _strip_braces(entry.get("title"))
        journal = _strip_braces(entry.get("journal") or entry.get("booktitle"))
        year = _parse_year(entry.get("year"))
        authors = [
            _strip_braces(a) for a in (entry.get("author") or "").split(" and ") if a.strip()
        ]
        if not _complete(title, journal, year, authors):
            continue
        refs.append(
            NormalizedRef(
                title=title,
                journal=journal,
                year=year,
                authors=authors,
                doi=_strip_braces(entry.get("doi")) or None,
                pmid=_strip_braces(entry.get("pmid")) or None,
                abstract=_strip_braces(entry.get("abstract")) or None,
                source=RecordSource.BIBTEX,
            )
        )
    logger.info(f"Parsed {len(refs)} of {len(database.entries)} BibTeX entries")
    return refs


def parse_import_file(
    content: Union[str, bytes], filename: str, max_bytes: Optional[int] = None
) -> List[NormalizedRef]:
    """Parse an RIS or BibTeX upload, dispatching on the file extension.

    Raises:
        InvalidInputError: unsupported or non-structured extension, or undecodable bytes
        SizeLimitError: content larger than ``max_bytes``
    """
    fmt = detect_format(filename)
    if fmt not in STRUCTURED_FORMATS:
        raise InvalidInputError(f"{filename} is not an RIS or BibTeX file")

    size = len(content) if isinstance(content, bytes) else len(content.encode("utf-8"))
    if max_bytes is not None and size > max_bytes:
        raise SizeLimitError(
            f"File exceeds {max_bytes // (1024 * 1024)}MB limit",
            code="ERR_FILE_TOO_LARGE",
            details={"size": size, "max_bytes": max_bytes},
        )

    if isinstance(content, bytes):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"{filename} is not valid UTF-8 text") from e
    else:
        text = content

    if fmt is RecordSource.RIS:
        return parse_ris(text)
    return parse_bibtex(text)
