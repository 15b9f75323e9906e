"""Text and metadata normalization utilities."""

import re
import unicodedata
from typing import Any, Optional

# Any character that is neither a word character nor whitespace, in any
# script, plus the underscore that ``\w`` lets through.
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_YEAR = re.compile(r"\b(?:19|20)\d{2}\b")

# Tie-break weights for picking a duplicate group's representative. These are
# tuning constants; changing one changes which record wins a group.
RICHNESS_WEIGHTS = {
    "title": 10,
    "doi": 20,
    "pmid": 15,
    "pmcid": 10,
    "abstract": 15,
    "authors": 10,
    "journal": 5,
    "year": 5,
    "mesh_terms": 5,
}


def normalize_title(title: Optional[str]) -> str:
    """Normalize a title for comparison."""
    if not title:
        return ""
    title = unicodedata.normalize("NFKC", title).lower()
    title = _PUNCTUATION.sub("", title)
    return " ".join(title.split())


def richness_score(ref: Any) -> int:
    """Additive completeness score used only to pick a group's canonical record."""
    score = 0
    for field, weight in RICHNESS_WEIGHTS.items():
        value = getattr(ref, field, None)
        if field == "year":
            present = value is not None
        else:
            present = bool(value)
        if present:
            score += weight
    return score


def extract_year(text: Optional[str], min_year: int = 1900, max_year: int = 2100) -> Optional[int]:
    """Return the first plausible 19xx/20xx year in a date-ish string."""
    if not text:
        return None
    match = _YEAR.search(str(text))
    if not match:
        return None
    year = int(match.group(0))
    if year < min_year or year > max_year:
        return None
    return year


def clean_abstract(abstract: Optional[str], max_length: int = 5000) -> Optional[str]:
    """Clean and truncate an abstract."""
    if not abstract:
        return None
    abstract = " ".join(abstract.split())
    if not abstract:
        return None
    if len(abstract) > max_length:
        abstract = abstract[:max_length] + "..."
    return abstract
