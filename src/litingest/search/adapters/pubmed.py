"""PubMed E-utilities adapter: ESearch for the id list, ESummary in batches."""

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
from ...core.models import NormalizedRef, PubMedAuthor, PubMedPayload, RecordSource
from ...core.normalization import extract_year
from ...utils.logging import get_logger
from ...utils.rate_limit import RateLimiter
from ..base import ProviderSearchResult, SearchFilters, SearchProvider

logger = get_logger(__name__)

MAX_RETMAX = 200


def is_transient_http_error(exc: BaseException) -> bool:
    """Network failures, 429 and 5xx are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class PubMedClient(SearchProvider):
    """NCBI E-utilities client with rate limiting and retried requests."""

    name = "pubmed"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.batch_size = settings.provider_batch_size
        self.rate_limiter = RateLimiter(rate=settings.pubmed_rate_limit, period=1.0)
        self.client = client or httpx.AsyncClient(
            base_url=settings.pubmed_base_url,
            timeout=settings.provider_request_timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )

    def _params(self, **params: Any) -> Dict[str, Any]:
        merged = {
            **params,
            "tool": self.settings.pubmed_tool,
            "email": self.settings.pubmed_email,
            "api_key": self.settings.pubmed_api_key,
            "retmode": "json",
        }
        return {k: v for k, v in merged.items() if v not in (None, "")}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )
    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.rate_limiter.acquire()
        logger.debug(f"GET {path}", extra={"params": {k: v for k, v in params.items() if k != "api_key"}})
        response = await self.client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def esearch(
        self, term: str, limit: int, filters: Optional[SearchFilters] = None
    ) -> Tuple[List[str], int]:
        """Return ``(pmids, total_found)``; ``retmax`` is clamped to 1..200."""
        retmax = min(max(limit or 50, 1), MAX_RETMAX)
        filters = filters or SearchFilters()
        data = await self._get_json(
            "esearch.fcgi",
            self._params(
                db="pubmed",
                term=term,
                retmax=retmax,
                sort="pub_date" if filters.sort == "pub_date" else None,
                mindate=filters.mindate,
                maxdate=filters.maxdate,
                datetype="pdat" if (filters.mindate or filters.maxdate) else None,
            ),
        )
        result = data.get("esearchresult") or {}
        ids = [str(i) for i in result.get("idlist") or []]
        total = int(result.get("count") or len(ids))
        return ids, total

    async def esummary(self, pmids: List[str]) -> List[NormalizedRef]:
        """Fetch summaries in chunks of ``provider_batch_size`` ids."""
        records: List[NormalizedRef] = []
        for start in range(0, len(pmids), self.batch_size):
            batch = pmids[start : start + self.batch_size]
            data = await self._get_json(
                "esummary.fcgi", self._params(db="pubmed", id=",".join(batch))
            )
            result = data.get("result") or {}
            for uid in result.get("uids") or []:
                doc = result.get(str(uid))
                if not doc:
                    continue
                try:
                    records.append(self._parse_summary(str(uid), doc))
                except ValueError as e:
                    logger.warning(f"Failed to parse summary: {e}", extra={"pmid": uid})
        return records

    @staticmethod
    def _article_id(articleids: List[Dict[str, str]], idtype: str) -> Optional[str]:
        for entry in articleids:
            if entry.get("idtype", "").lower() == idtype:
                return entry.get("value") or None
        return None

    def _parse_summary(self, uid: str, doc: Dict[str, Any]) -> NormalizedRef:
        articleids = [
            {"idtype": str(a.get("idtype", "")), "value": str(a.get("value", ""))}
            for a in doc.get("articleids") or []
        ]
        payload = PubMedPayload(
            uid=uid,
            pubdate=doc.get("pubdate"),
            epubdate=doc.get("epubdate"),
            source=doc.get("source"),
            fulljournalname=doc.get("fulljournalname"),
            authors=[PubMedAuthor(**a) for a in doc.get("authors") or [] if a.get("name")],
            articleids=articleids,
        )
        doi = self._article_id(articleids, "doi")
        pmcid = self._article_id(articleids, "pmc") or self._article_id(articleids, "pmcid")
        return NormalizedRef(
            title=(doc.get("title") or "").strip(),
            authors=[a.name for a in payload.authors],
            journal=payload.fulljournalname or payload.source or "",
            year=extract_year(payload.pubdate) or extract_year(payload.epubdate),
            doi=normalize_doi(doi) or None,
            pmid=uid,
            pmcid=pmcid,
            source=RecordSource.PUBMED,
            external_id=uid,
            payload=payload,
        )

    async def search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> ProviderSearchResult:
        logger.info("Starting PubMed search", extra={"query": query, "limit": limit})
        try:
            pmids, total = await self.esearch(query, limit, filters)
            records = await self.esummary(pmids)
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"PubMed returned HTTP {e.response.status_code}",
                provider=self.name,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"PubMed request failed: {e}", provider=self.name) from e
        logger.info("PubMed search completed", extra={"total_found": total, "fetched": len(records)})
        return ProviderSearchResult(total_found=total, records=records)

    async def close(self) -> None:
        await self.client.aclose()
