"""OpenAlex search adapter with cursor pagination and rate limiting."""

import calendar
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ...config.settings import Settings
from ...core.errors import ProviderError
from ...core.ids import normalize_doi
from ...core.models import NormalizedRef, OpenAlexPayload, RecordSource
from ...core.normalization import clean_abstract, extract_year
from ...utils.logging import get_logger
from ...utils.rate_limit import RateLimiter
from ..base import ProviderSearchResult, SearchFilters, SearchProvider
from .pubmed import is_transient_http_error

logger = get_logger(__name__)


def _to_iso_date(value: str, end: bool = False) -> str:
    """Turn ``YYYY``, ``YYYY/MM`` or ``YYYY/MM/DD`` into an ISO date."""
    parts = value.replace("-", "/").split("/")
    year = int(parts[0])
    month = int(parts[1]) if len(parts) > 1 else (12 if end else 1)
    if len(parts) > 2:
        day = int(parts[2])
    else:
        day = calendar.monthrange(year, month)[1] if end else 1
    return f"{year:04d}-{month:02d}-{day:02d}"


def _tail_id(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.rstrip("/").split("/")[-1] or None


class OpenAlexClient(SearchProvider):
    """OpenAlex API client with robust error handling and pagination."""

    name = "openalex"
    BASE_URL = "https://api.openalex.org/works"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.email = settings.openalex_email
        self.rate_limiter = RateLimiter(rate=settings.openalex_rate_limit, period=1.0)
        self.client = client or httpx.AsyncClient(
            timeout=settings.provider_request_timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers=self._build_headers(),
        )
        self._pages_fetched = 0

    def _build_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": f"litingest/0.1.0 (mailto:{self.email})" if self.email else "litingest/0.1.0"
        }

    @staticmethod
    def _build_filters(filters: Optional[SearchFilters]) -> List[str]:
        out: List[str] = []
        if filters and filters.mindate:
            out.append(f"from_publication_date:{_to_iso_date(filters.mindate)}")
        if filters and filters.maxdate:
            out.append(f"to_publication_date:{_to_iso_date(filters.maxdate, end=True)}")
        return out

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )
    async def _fetch_page(
        self,
        query: str,
        filters: List[str],
        cursor: str,
        per_page: int,
        sort: Optional[str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"search": query, "per_page": min(per_page, 200), "cursor": cursor}
        if filters:
            params["filter"] = ",".join(filters)
        if sort:
            params["sort"] = sort
        if self.email:
            params["mailto"] = self.email
        await self.rate_limiter.acquire()
        logger.debug("Fetching OpenAlex page", extra={"query": query, "cursor": cursor, "filters": filters})
        response = await self.client.get(self.BASE_URL, params=params)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _reconstruct_abstract(inverted_index: Optional[Dict[str, List[int]]]) -> Optional[str]:
        if not inverted_index:
            return None
        words: List[Tuple[int, str]] = []
        for word, positions in inverted_index.items():
            for pos in positions:
                words.append((pos, word))
        words.sort(key=lambda x: x[0])
        return clean_abstract(" ".join(word for _, word in words))

    def _parse_work(self, work: Dict[str, Any]) -> NormalizedRef:
        openalex_id = _tail_id(work.get("id")) or ""
        ids = {k: str(v) for k, v in (work.get("ids") or {}).items() if v}
        doi = normalize_doi(work.get("doi") or ids.get("doi"))
        year = extract_year(work.get("publication_date")) or work.get("publication_year")
        primary_location = work.get("primary_location") or {}
        source_data = primary_location.get("source") or {}
        authors = [
            (a.get("author") or {}).get("display_name")
            for a in work.get("authorships") or []
        ]
        return NormalizedRef(
            title=(work.get("title") or work.get("display_name") or "").strip(),
            authors=[a for a in authors if a],
            journal=source_data.get("display_name") or "",
            year=year,
            doi=doi or None,
            pmid=_tail_id(ids.get("pmid")),
            pmcid=_tail_id(ids.get("pmcid")),
            abstract=self._reconstruct_abstract(work.get("abstract_inverted_index")),
            source=RecordSource.OPENALEX,
            external_id=openalex_id,
            payload=OpenAlexPayload(
                id=openalex_id,
                publication_date=work.get("publication_date"),
                cited_by_count=work.get("cited_by_count") or 0,
                ids=ids,
                is_oa=bool((work.get("open_access") or {}).get("is_oa")),
            ),
        )

    async def search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> ProviderSearchResult:
        api_filters = self._build_filters(filters)
        sort = "publication_date:desc" if filters and filters.sort == "pub_date" else None
        per_page = min(max(limit, 1), 200)
        cursor = "*"
        total = 0
        records: List[NormalizedRef] = []
        logger.info("Starting OpenAlex search", extra={"query": query, "limit": limit})
        try:
            while len(records) < limit:
                data = await self._fetch_page(query, api_filters, cursor, per_page, sort)
                meta = data.get("meta") or {}
                total = int(meta.get("count") or total)
                results = data.get("results") or []
                self._pages_fetched += 1
                for work in results:
                    try:
                        records.append(self._parse_work(work))
                    except ValueError as e:
                        logger.warning(f"Failed to parse work: {e}", extra={"work_id": work.get("id")})
                    if len(records) >= limit:
                        break
                cursor = meta.get("next_cursor")
                if not cursor or not results:
                    break
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"OpenAlex returned HTTP {e.response.status_code}",
                provider=self.name,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAlex request failed: {e}", provider=self.name) from e
        logger.info(
            "OpenAlex search completed",
            extra={"total_found": total, "fetched": len(records), "pages_fetched": self._pages_fetched},
        )
        return ProviderSearchResult(total_found=total, records=records)

    async def close(self) -> None:
        await self.client.aclose()
