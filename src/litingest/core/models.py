"""Core domain models for bibliographic records and dedup results."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator


class RecordSource(str, Enum):
    """Where a record came from."""
    PUBMED = "pubmed"
    OPENALEX = "openalex"
    RIS = "ris"
    BIBTEX = "bibtex"
    PDF = "pdf"
    DOCX = "docx"
    EXTRACTED = "extracted"


Confidence = Literal["high", "medium", "low"]


class PubMedAuthor(BaseModel):
    name: str
    authtype: Optional[str] = None


class PubMedPayload(BaseModel):
    """Fields kept from an ESummary document."""
    kind: Literal["pubmed"] = "pubmed"
    uid: str
    pubdate: Optional[str] = None
    epubdate: Optional[str] = None
    source: Optional[str] = None
    fulljournalname: Optional[str] = None
    authors: List[PubMedAuthor] = Field(default_factory=list)
    articleids: List[Dict[str, str]] = Field(default_factory=list)


class OpenAlexPayload(BaseModel):
    """Fields kept from an OpenAlex work."""
    kind: Literal["openalex"] = "openalex"
    id: str
    publication_date: Optional[str] = None
    cited_by_count: int = 0
    ids: Dict[str, str] = Field(default_factory=dict)
    is_oa: bool = False


class OpaquePayload(BaseModel):
    """Fallback for provider responses without a known schema."""
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = Field(default_factory=dict)


ProviderPayload = Annotated[
    Union[PubMedPayload, OpenAlexPayload, OpaquePayload],
    Field(discriminator="kind"),
]


class NormalizedRef(BaseModel):
    """A provisional bibliographic record.

    Instances are immutable; enrich a record with ``model_copy(update=...)``.
    Records that are not ``partial`` but carry ``confidence < 1.0`` must be
    structurally complete (title, journal, year and at least one author).
    """

    model_config = ConfigDict(frozen=True)

    title: str = ""
    authors: List[str] = Field(default_factory=list)
    journal: str = ""
    year: Optional[int] = Field(None, ge=1000, le=2200)
    doi: Optional[str] = None
    pmid: Optional[str] = None
    pmcid: Optional[str] = None
    abstract: Optional[str] = None
    mesh_terms: List[str] = Field(default_factory=list)
    source: RecordSource = RecordSource.EXTRACTED
    partial: bool = False
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    raw_text: Optional[str] = None

    # Provider accession number used for per-item caching
    external_id: Optional[str] = None
    payload: Optional[ProviderPayload] = Field(None, exclude=True)

    @model_validator(mode="after")
    def _complete_records_are_structured(self) -> "NormalizedRef":
        if not self.partial and self.confidence < 1.0:
            missing = [
                name
                for name, present in (
                    ("title", bool(self.title)),
                    ("journal", bool(self.journal)),
                    ("year", self.year is not None),
                    ("authors", bool(self.authors)),
                )
                if not present
            ]
            if missing:
                raise ValueError(
                    f"non-partial record with confidence {self.confidence} is missing: {', '.join(missing)}"
                )
        return self


class DedupeGroup(BaseModel):
    """Records judged to describe one publication."""
    canonical: NormalizedRef
    duplicates: List[NormalizedRef] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return 1 + len(self.duplicates)


class DedupeStats(BaseModel):
    total: int = Field(0, ge=0)
    unique: int = Field(0, ge=0)
    duplicates: int = Field(0, ge=0)
    duplicate_groups: int = Field(0, ge=0)


class DedupeResult(BaseModel):
    """Outcome of one dedup run.

    ``groups`` holds one group per unique record (singletons included);
    ``duplicate_groups`` is the subset that actually absorbed duplicates.
    """
    unique: List[NormalizedRef] = Field(default_factory=list)
    groups: List[DedupeGroup] = Field(default_factory=list)
    stats: DedupeStats = Field(default_factory=DedupeStats)

    @property
    def duplicate_groups(self) -> List[DedupeGroup]:
        return [g for g in self.groups if g.duplicates]
