"""Two-pass deduplication of bibliographic records."""

from collections import OrderedDict
from typing import Dict, List, Sequence

from ..core.errors import InvariantViolation
from ..core.ids import canonical_hash, is_exact_duplicate
from ..core.models import DedupeGroup, DedupeResult, DedupeStats, NormalizedRef
from ..core.normalization import richness_score
from ..utils.logging import get_logger

logger = get_logger(__name__)


class _Group:
    """Working group of input indices; ``members[0]`` is the canonical."""

    __slots__ = ("members",)

    def __init__(self, members: List[int]) -> None:
        self.members = members


class Deduplicator:
    """
    Group records that describe the same publication.

    Strategy:
    1. Identifier pass: pairwise DOI/PMID equality, walking records in input
       order and greedily absorbing later matches.
    2. Hash pass: re-key each identifier group's canonical by canonical hash,
       which catches records with no shared identifier but the same
       normalized title and year.

    Within a group the record with the highest richness score is canonical;
    on equal scores the first record encountered wins. Results are
    deterministic for a given input order.
    """

    def dedupe(self, records: Sequence[NormalizedRef]) -> DedupeResult:
        if not records:
            return DedupeResult()

        logger.info(f"Starting deduplication of {len(records)} records")
        scores = [richness_score(r) for r in records]

        id_groups = self._identifier_groups(records, scores)
        logger.info(
            f"Identifier pass: {len(records)} -> {len(id_groups)} groups"
        )

        hash_buckets: "OrderedDict[str, List[_Group]]" = OrderedDict()
        for group in id_groups:
            key = canonical_hash(records[group.members[0]])
            hash_buckets.setdefault(key, []).append(group)

        final_groups: List[_Group] = []
        for bucket in hash_buckets.values():
            final_groups.append(self._merge_bucket(bucket, scores))
        logger.info(f"Hash pass: {len(id_groups)} -> {len(final_groups)} groups")

        result = self._assemble(records, final_groups)
        validate_dedupe_result(result)
        logger.info(
            "Deduplication complete",
            extra={"dedupe_stats": result.stats.model_dump()},
        )
        return result

    @staticmethod
    def _pick_canonical(indices: List[int], scores: List[int]) -> int:
        best = indices[0]
        for idx in indices[1:]:
            if scores[idx] > scores[best]:
                best = idx
        return best

    def _identifier_groups(self, records: Sequence[NormalizedRef], scores: List[int]) -> List[_Group]:
        processed = [False] * len(records)
        groups: List[_Group] = []
        for i, record in enumerate(records):
            if processed[i]:
                continue
            processed[i] = True
            members = [i]
            for j in range(i + 1, len(records)):
                if not processed[j] and is_exact_duplicate(record, records[j]):
                    members.append(j)
                    processed[j] = True
            canonical = self._pick_canonical(members, scores)
            rest = [m for m in members if m != canonical]
            groups.append(_Group([canonical] + rest))
        return groups

    def _merge_bucket(self, bucket: List[_Group], scores: List[int]) -> _Group:
        if len(bucket) == 1:
            return bucket[0]
        canonicals = [g.members[0] for g in bucket]
        winner = self._pick_canonical(canonicals, scores)
        duplicates: List[int] = []
        for group in bucket:
            duplicates.extend(m for m in group.members if m != winner)
        return _Group([winner] + sorted(duplicates))

    @staticmethod
    def _assemble(records: Sequence[NormalizedRef], groups: List[_Group]) -> DedupeResult:
        unique: List[NormalizedRef] = []
        dedupe_groups: List[DedupeGroup] = []
        for group in groups:
            canonical = records[group.members[0]]
            unique.append(canonical)
            dedupe_groups.append(
                DedupeGroup(
                    canonical=canonical,
                    duplicates=[records[m] for m in group.members[1:]],
                )
            )
        total_duplicates = sum(len(g.duplicates) for g in dedupe_groups)
        stats = DedupeStats(
            total=len(records),
            unique=len(unique),
            duplicates=total_duplicates,
            duplicate_groups=sum(1 for g in dedupe_groups if g.duplicates),
        )
        return DedupeResult(unique=unique, groups=dedupe_groups, stats=stats)


def dedupe(records: Sequence[NormalizedRef]) -> DedupeResult:
    """Convenience wrapper around ``Deduplicator().dedupe``."""
    return Deduplicator().dedupe(records)


def validate_dedupe_result(result: DedupeResult) -> None:
    """Raise ``InvariantViolation`` if a dedup result contradicts itself."""
    stats = result.stats
    if stats.total != stats.unique + stats.duplicates:
        _violation(
            "dedup stats do not add up",
            total=stats.total,
            unique=stats.unique,
            duplicates=stats.duplicates,
        )
    if stats.unique != len(result.unique) or len(result.unique) != len(result.groups):
        _violation(
            "unique count does not match groups",
            stats_unique=stats.unique,
            unique=len(result.unique),
            groups=len(result.groups),
        )
    seen: Dict[str, int] = {}
    for position, record in enumerate(result.unique):
        digest = canonical_hash(record)
        if digest in seen:
            _violation(
                "two unique records share a canonical hash",
                canonical_hash=digest,
                first_position=seen[digest],
                second_position=position,
            )
        seen[digest] = position


def _violation(message: str, **context) -> None:
    logger.critical(f"Dedup invariant violated: {message}", extra={"context": context})
    raise InvariantViolation(message, details=context)


def dedupe_summary(result: DedupeResult) -> Dict[str, float]:
    """Flat statistics for reports, including the deduplication rate in percent."""
    stats = result.stats
    rate = (stats.duplicates / stats.total) * 100 if stats.total > 0 else 0.0
    return {
        "total_records": stats.total,
        "unique_records": stats.unique,
        "duplicate_records": stats.duplicates,
        "duplicate_groups": stats.duplicate_groups,
        "deduplication_rate": round(rate, 2),
    }
