"""Identifier normalization, canonical keys and hashing."""

import hashlib
import itertools
import json
import re
import uuid
from typing import Optional

from .models import NormalizedRef
from .normalization import normalize_title

DOI_PREFIX = re.compile(r"^\s*(?:doi:\s*|https?://(?:dx\.)?doi\.org/)", re.IGNORECASE)
DOI_PATTERN = re.compile(r"10\.\d{4,}(?:\.\d+)*/[-._;()/:A-Z0-9]+", re.IGNORECASE)

# In-process keys for records with no identity; persistence uses storage_key.
_anonymous_keys = itertools.count(1)


def normalize_doi(doi: Optional[str]) -> str:
    """Strip a ``doi:`` or ``https://doi.org/`` prefix, lowercase and trim."""
    if not doi:
        return ""
    return DOI_PREFIX.sub("", doi).lower().strip()


def normalize_pmid(pmid: Optional[str]) -> str:
    """PMIDs are numeric strings: trim only."""
    if not pmid:
        return ""
    return pmid.strip()


def canonical_key(ref: NormalizedRef) -> str:
    """Build the grouping key for a record.

    Exactly one identifier segment is used, in priority DOI > PMID >
    normalized title, followed by ``|year:<year>`` when the year is known.
    Records with none of the three get a process-unique key so they are
    never merged with anything else.
    """
    doi = normalize_doi(ref.doi)
    pmid = normalize_pmid(ref.pmid)
    title = normalize_title(ref.title)
    if doi:
        parts = [f"doi:{doi}"]
    elif pmid:
        parts = [f"pmid:{pmid}"]
    elif title:
        parts = [f"title:{title}"]
    else:
        return f"anonymous:{next(_anonymous_keys)}"
    if ref.year is not None:
        parts.append(f"year:{ref.year}")
    return "|".join(parts)


def canonical_hash(ref: NormalizedRef) -> str:
    """SHA-256 hex digest of ``canonical_key``; collisions group records together."""
    return hashlib.sha256(canonical_key(ref).encode("utf-8")).hexdigest()


def has_identity(ref: NormalizedRef) -> bool:
    """True when the record carries a DOI, a PMID or a usable title."""
    return bool(normalize_doi(ref.doi) or normalize_pmid(ref.pmid) or normalize_title(ref.title))


def storage_key(ref: NormalizedRef) -> str:
    """Key a record is persisted under, stable across processes.

    Records with an identity use ``canonical_hash``. Records without one are
    keyed by their content (raw text, authors, journal, year), so the same
    reference stored twice collides while unrelated ones never do. A record
    with no content at all gets a random key.
    """
    if has_identity(ref):
        return canonical_hash(ref)
    content = {
        "raw": " ".join((ref.raw_text or "").split()).lower(),
        "authors": [a.strip().lower() for a in ref.authors],
        "journal": ref.journal.strip().lower(),
        "year": ref.year,
    }
    if not any(content.values()):
        return f"anon-{uuid.uuid4().hex}"
    encoded = json.dumps(content, sort_keys=True)
    return "content-" + hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def is_exact_duplicate(a: NormalizedRef, b: NormalizedRef) -> bool:
    """True when both records share a normalized DOI or a normalized PMID."""
    doi_a, doi_b = normalize_doi(a.doi), normalize_doi(b.doi)
    if doi_a and doi_b and doi_a == doi_b:
        return True
    pmid_a, pmid_b = normalize_pmid(a.pmid), normalize_pmid(b.pmid)
    return bool(pmid_a and pmid_b and pmid_a == pmid_b)
