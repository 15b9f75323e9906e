"""Match incoming records against a project's existing candidates."""

from typing import Iterable, List, Optional, Sequence, Tuple
from rapidfuzz import fuzz

from ..core.ids import normalize_doi, normalize_pmid
from ..core.models import NormalizedRef
from ..core.normalization import normalize_title
from ..utils.logging import get_logger

logger = get_logger(__name__)


class CandidateMatcher:
    """
    Split new records into those to add and those already in the project.

    A record is already present when an existing candidate has the same
    normalized DOI, the same PMID, or the same year and a normalized title
    whose similarity exceeds ``title_threshold``.
    """

    def __init__(self, title_threshold: float = 0.9) -> None:
        self.title_threshold = title_threshold

    def _titles_similar(self, a: str, b: str) -> bool:
        if not a or not b:
            return False
        if a == b:
            return True
        return fuzz.ratio(a, b) / 100.0 > self.title_threshold

    def find_match(self, ref: NormalizedRef, existing: Iterable[NormalizedRef]) -> Optional[NormalizedRef]:
        doi = normalize_doi(ref.doi)
        pmid = normalize_pmid(ref.pmid)
        title = normalize_title(ref.title)
        for candidate in existing:
            if doi and doi == normalize_doi(candidate.doi):
                return candidate
            if pmid and pmid == normalize_pmid(candidate.pmid):
                return candidate
            if (
                ref.year is not None
                and ref.year == candidate.year
                and self._titles_similar(title, normalize_title(candidate.title))
            ):
                return candidate
        return None

    def split(
        self, refs: Sequence[NormalizedRef], existing: Sequence[NormalizedRef]
    ) -> Tuple[List[NormalizedRef], List[NormalizedRef]]:
        """Return ``(to_add, already_present)`` preserving input order."""
        to_add: List[NormalizedRef] = []
        present: List[NormalizedRef] = []
        for ref in refs:
            if self.find_match(ref, existing) is not None:
                present.append(ref)
            else:
                to_add.append(ref)
        logger.info(
            f"Matched {len(refs)} records against {len(existing)} existing candidates: "
            f"{len(to_add)} new, {len(present)} already present"
        )
        return to_add, present
