"""Base classes and interfaces for search providers."""

from abc import ABC, abstractmethod
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..core.models import NormalizedRef


class SearchFilters(BaseModel):
    """Optional date window (``YYYY``, ``YYYY/MM`` or ``YYYY/MM/DD``) and ordering."""
    mindate: Optional[str] = None
    maxdate: Optional[str] = None
    sort: Optional[Literal["relevance", "pub_date"]] = None


class ProviderSearchResult(BaseModel):
    total_found: int = 0
    records: List[NormalizedRef] = Field(default_factory=list)


class SearchProvider(ABC):
    """A literature-search source with an ID-list phase and a batched detail phase."""

    name: str = "provider"

    @abstractmethod
    async def search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> ProviderSearchResult:
        """
        Execute a search and return normalized records.

        Args:
            query: Provider query string
            limit: Maximum number of records to return
            filters: Optional date window and sort order

        Raises:
            ProviderError: the provider could not be reached or answered with an error
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Clean up resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} source={self.name}>"
