"""CLI commands that run without providers or persistence."""

from typer.testing import CliRunner

from litingest.cli.main import app

runner = CliRunner()

RIS_WITH_DUPLICATE = """TY  - JOUR
TI  - Duplicated record
AU  - Smith, John
PY  - 2020
JO  - Journal
DO  - 10.1000/dup
ER  - 

TY  - JOUR
TI  - Duplicated record (copy)
AU  - Smith, John
PY  - 2020
JO  - Journal
DO  - https://doi.org/10.1000/DUP
ER  - 
"""


class TestExtractCommand:
    def test_lists_references(self, tmp_path) -> None:
        doc = tmp_path / "paper.txt"
        doc.write_text(
            "Body\nReferences\n"
            "1. A. One. doi:10.1000/one\n2. B. Two. doi:10.1000/two\n3. C. Three. doi:10.1000/three\n",
            encoding="utf-8",
        )
        result = runner.invoke(app, ["extract", str(doc)])
        assert result.exit_code == 0
        assert "confidence: high" in result.output

    def test_no_section(self, tmp_path) -> None:
        doc = tmp_path / "prose.txt"
        doc.write_text("Nothing to see.", encoding="utf-8")
        result = runner.invoke(app, ["extract", str(doc)])
        assert result.exit_code == 0
        assert "No references section detected" in result.output


class TestDedupeCommand:
    def test_summary(self, tmp_path) -> None:
        export = tmp_path / "export.ris"
        export.write_text(RIS_WITH_DUPLICATE, encoding="utf-8")
        result = runner.invoke(app, ["dedupe", str(export)])
        assert result.exit_code == 0
        assert "Deduplication Summary" in result.output
        assert "50.00%" in result.output

    def test_unsupported_file(self, tmp_path) -> None:
        notes = tmp_path / "notes.txt"
        notes.write_text("x", encoding="utf-8")
        result = runner.invoke(app, ["dedupe", str(notes)])
        assert result.exit_code == 1
        assert "validation" in result.output


class TestImportFileCommand:
    def test_pdf_rejected_before_any_job(self, tmp_path) -> None:
        doc = tmp_path / "paper.pdf"
        doc.write_bytes(b"%PDF-1.4")
        result = runner.invoke(app, ["import-file", str(doc), "--project", "p1"])
        assert result.exit_code == 1
        assert "PDF import needs a text extractor" in result.output

    def test_unsupported_extension(self, tmp_path) -> None:
        doc = tmp_path / "notes.txt"
        doc.write_text("hello", encoding="utf-8")
        result = runner.invoke(app, ["import-file", str(doc), "--project", "p1"])
        assert result.exit_code == 1
        assert "Unsupported file format" in result.output
