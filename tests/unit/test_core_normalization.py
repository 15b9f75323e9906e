"""Unit tests for text normalization and richness scoring."""

from litingest.core.models import NormalizedRef
from litingest.core.normalization import (
    clean_abstract,
    extract_year,
    normalize_title,
    richness_score,
)


class TestNormalizeTitle:
    def test_lowercase_punctuation_whitespace(self) -> None:
        assert normalize_title("  Deep   Learning:\tA Review! ") == "deep learning a review"

    def test_non_ascii_punctuation(self) -> None:
        assert normalize_title("«Étude» — résultats…") == "étude résultats"

    def test_underscore_stripped(self) -> None:
        assert normalize_title("snake_case title") == "snakecase title"

    def test_empty(self) -> None:
        assert normalize_title("") == ""
        assert normalize_title(None) == ""


class TestRichnessScore:
    def test_empty_record(self) -> None:
        assert richness_score(NormalizedRef()) == 0

    def test_full_record(self) -> None:
        ref = NormalizedRef(
            title="T",
            doi="10.1/x",
            pmid="123456",
            pmcid="PMC1",
            abstract="A",
            authors=["Smith J"],
            journal="J",
            year=2020,
            mesh_terms=["Humans"],
        )
        assert richness_score(ref) == 95

    def test_monotonic(self) -> None:
        base = NormalizedRef(title="T")
        for update in ({"doi": "10.1/x"}, {"abstract": "A"}, {"year": 2001}, {"mesh_terms": ["X"]}):
            assert richness_score(base.model_copy(update=update)) > richness_score(base)


class TestExtractYear:
    def test_first_year(self) -> None:
        assert extract_year("2019 Mar 4; 2020") == 2019

    def test_no_year(self) -> None:
        assert extract_year("n.d.") is None
        assert extract_year(None) is None


class TestCleanAbstract:
    def test_whitespace_and_truncation(self) -> None:
        assert clean_abstract("  a \n b  ") == "a b"
        assert clean_abstract("x" * 20, max_length=10) == "x" * 10 + "..."

    def test_blank(self) -> None:
        assert clean_abstract("   ") is None
