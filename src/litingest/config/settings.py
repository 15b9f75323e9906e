"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_REFERENCE_HEADERS = [
    "References",
    "Bibliography",
    "Works Cited",
    "Literature Cited",
    "Références",
    "Bibliografía",
    "Literaturverzeichnis",
    "Bibliografia",
    "参考文献",
    "المراجع",
    "참고문헌",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Provider configuration
    pubmed_base_url: str = Field("https://eutils.ncbi.nlm.nih.gov/entrez/eutils")
    pubmed_api_key: Optional[str] = Field(None, description="NCBI API key (raises the rate limit)")
    pubmed_email: Optional[str] = Field(None, description="Contact email sent to E-utilities")
    pubmed_tool: Optional[str] = Field("litingest", description="Tool name sent to E-utilities")
    openalex_email: Optional[str] = Field(None, description="Email for OpenAlex polite pool")
    search_providers: List[str] = Field(default_factory=lambda: ["pubmed"])

    # Rate limits (requests per second) and call budgets (seconds)
    pubmed_rate_limit: float = Field(3.0, gt=0)
    openalex_rate_limit: float = Field(10.0, gt=0)
    provider_batch_size: int = Field(200, ge=1, le=500)
    provider_request_timeout: float = Field(30.0, gt=0)
    provider_call_ceiling: float = Field(120.0, gt=0)

    # Cache
    cache_dir: Path = Field(Path(".cache"))
    record_cache_ttl_seconds: int = Field(86400, ge=1)

    # Persistence
    data_dir: Path = Field(Path("data"))

    # Jobs
    worker_count: int = Field(2, ge=1, le=32)
    job_max_attempts: int = Field(3, ge=2, le=10)
    retry_base_delay: float = Field(2.0, ge=0)
    retry_max_delay: float = Field(60.0, gt=0)
    worker_poll_interval: float = Field(1.0, gt=0)
    job_stale_after_seconds: float = Field(900.0, gt=0)

    # Import limits
    feature_import_pdf_bib: bool = True
    feature_import_docx_bib: bool = True
    pdf_max_size_mb: float = Field(20.0, gt=0)
    pdf_max_pages: int = Field(50, ge=1)
    pdf_max_text_chars: int = Field(1_000_000, ge=1)
    pdf_timeout_seconds: float = Field(30.0, gt=0)
    docx_max_size_mb: float = Field(20.0, gt=0)
    docx_max_text_chars: int = Field(1_000_000, ge=1)
    docx_timeout_seconds: float = Field(15.0, gt=0)
    structured_max_size_mb: float = Field(10.0, gt=0)
    reference_headers: List[str] = Field(default_factory=lambda: list(DEFAULT_REFERENCE_HEADERS))

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")

    @field_validator("search_providers")
    @classmethod
    def _lowercase_providers(cls, v: List[str]) -> List[str]:
        return [name.strip().lower() for name in v if name.strip()]

    @field_validator("reference_headers")
    @classmethod
    def _require_headers(cls, v: List[str]) -> List[str]:
        headers = [h.strip() for h in v if h.strip()]
        if not headers:
            raise ValueError("reference_headers must not be empty")
        return headers


# Instantiate global settings
settings = Settings()
