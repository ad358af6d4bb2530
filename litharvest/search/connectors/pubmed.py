"""
PubMed connector over NCBI E-utilities.

Two calls per search: esearch returns PMIDs as JSON, efetch returns the
full articles as PubMed XML. Filters are folded into the Entrez term:

    (term) AND ("2020/01/01"[Date - Publication] : "2023/12/31"[Date - Publication])
           AND (Smith J[Author] OR Doe A[Author])
           AND ("Nature"[Journal])
"""

import logging
import xml.etree.ElementTree as ET
from datetime import date

from litharvest.config.settings import Settings, get_settings
from litharvest.net.http_client import APIKeyRotator, HTTPClient
from litharvest.search.connectors.base import (
    ConnectorConfig,
    ConnectorHits,
    DatabaseConnector,
)
from litharvest.search.schemas import SearchQuery, SearchResult

logger = logging.getLogger(__name__)

EUTILS_BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def build_search_term(query: SearchQuery) -> str:
    """Fold the query filters into one Entrez search term."""
    terms = [f"({query.term.strip()})"]
    filters = query.filters

    if filters.date_range and (filters.date_range.start or filters.date_range.end):
        start = filters.date_range.start
        end = filters.date_range.end
        start_s = start.strftime("%Y/%m/%d") if start else "1800"
        end_s = end.strftime("%Y/%m/%d") if end else "3000"
        terms.append(f'("{start_s}"[Date - Publication] : "{end_s}"[Date - Publication])')

    if filters.authors:
        terms.append("(" + " OR ".join(f"{a}[Author]" for a in filters.authors) + ")")

    if filters.journals:
        terms.append("(" + " OR ".join(f'"{j}"[Journal]' for j in filters.journals) + ")")

    return " AND ".join(terms)


def _text(element: ET.Element | None) -> str | None:
    if element is None:
        return None
    # itertext() keeps text inside inline markup such as <i> and <sup>
    value = "".join(element.itertext()).strip()
    return value or None


def _month(value: str | None) -> int:
    if not value:
        return 1
    if value.isdigit():
        return min(max(int(value), 1), 12)
    return _MONTHS.get(value[:3].lower(), 1)


def parse_pub_date(pub_date: ET.Element | None) -> date | None:
    """PubDate has Year/Month/Day, or only MedlineDate like '2019 Mar-Apr'."""
    if pub_date is None:
        return None
    year = _text(pub_date.find("Year"))
    if year is None:
        medline = _text(pub_date.find("MedlineDate"))
        if not medline or not medline[:4].isdigit():
            return None
        year = medline[:4]
        parts = medline.split()
        month = _month(parts[1]) if len(parts) > 1 else 1
        return date(int(year), month, 1)

    month = _month(_text(pub_date.find("Month")))
    day_text = _text(pub_date.find("Day"))
    day = int(day_text) if day_text and day_text.isdigit() else 1
    try:
        return date(int(year), month, day)
    except ValueError:
        return date(int(year), month, 1)


def article_to_result(article: ET.Element) -> SearchResult | None:
    """Map one PubmedArticle element to a SearchResult."""
    citation = article.find("MedlineCitation")
    if citation is None:
        return None
    pmid = _text(citation.find("PMID"))
    art = citation.find("Article")
    if pmid is None or art is None:
        return None

    authors = []
    for author in art.findall("AuthorList/Author"):
        collective = _text(author.find("CollectiveName"))
        if collective:
            authors.append(collective)
            continue
        name = " ".join(
            part for part in (_text(author.find("LastName")), _text(author.find("ForeName")))
            if part
        )
        if name:
            authors.append(name)

    abstract_parts = [_text(el) for el in art.findall("Abstract/AbstractText")]
    abstract = " ".join(p for p in abstract_parts if p) or None

    doi = None
    for article_id in article.findall("PubmedData/ArticleIdList/ArticleId"):
        if article_id.get("IdType") == "doi":
            doi = _text(article_id)
            break
    if doi is None:
        for eloc in art.findall("ELocationID"):
            if eloc.get("EIdType") == "doi":
                doi = _text(eloc)
                break

    journal_issue = art.find("Journal/JournalIssue")
    keywords = [k for k in (_text(el) for el in citation.findall("KeywordList/Keyword")) if k]

    return SearchResult(
        id=pmid,
        database_id="pubmed",
        title=_text(art.find("ArticleTitle")) or "",
        authors=authors,
        abstract=abstract,
        journal=_text(art.find("Journal/Title")),
        doi=doi.lower() if doi else None,
        publication_date=parse_pub_date(
            journal_issue.find("PubDate") if journal_issue is not None else None
        ),
        keywords=keywords,
        url=ARTICLE_URL.format(pmid=pmid),
        metadata={
            "pmid": pmid,
            "volume": _text(journal_issue.find("Volume")) if journal_issue is not None else None,
            "issue": _text(journal_issue.find("Issue")) if journal_issue is not None else None,
        },
    )


class PubMedConnector(DatabaseConnector):
    """Searches PubMed via esearch + efetch."""

    def __init__(
        self,
        config: ConnectorConfig | None = None,
        settings: Settings | None = None,
        http_client: HTTPClient | None = None,
    ):
        settings = settings or get_settings()
        config = config or ConnectorConfig(
            id="pubmed",
            name="PubMed",
            auth_type="api_key" if settings.pubmed_configured else "none",
            base_url=EUTILS_BASE_URL,
            rate_limit=settings.pubmed_rate_limit,
        )
        super().__init__(config, http_client)
        self._base_url = (config.base_url or EUTILS_BASE_URL).rstrip("/")
        self._key_rotator = APIKeyRotator.from_env_var(settings.pubmed_api_keys)

    async def _search(self, query: SearchQuery, max_results: int) -> list[SearchResult]:
        return (await self._fetch(query, max_results)).results

    async def _fetch(self, query: SearchQuery, max_results: int) -> ConnectorHits:
        pmids, count = await self._esearch(query, max_results)
        # esearch's count is the upstream total; efetch may still drop articles
        exhausted = len(pmids) < max_results if count is None else count <= len(pmids)
        if not pmids:
            return ConnectorHits(results=[], exhausted=exhausted)
        return ConnectorHits(results=await self._efetch(pmids), exhausted=exhausted)

    async def _esearch(
        self, query: SearchQuery, max_results: int
    ) -> tuple[list[str], int | None]:
        """Returns (pmids, total hit count or None when esearch omits it)."""
        client = await self._client()
        response = await client.get(
            f"{self._base_url}/esearch.fcgi",
            params={
                "db": "pubmed",
                "term": build_search_term(query),
                "retmode": "json",
                "retmax": max_results,
                "sort": "relevance",
            },
            api_key_rotator=self._key_rotator,
            api_key_param="api_key",
        )
        payload = response.json()
        result = payload.get("esearchresult")
        if result is None:
            raise ValueError(f"esearch response missing esearchresult: {payload.get('error')}")
        pmids = list(result.get("idlist") or [])
        count = result.get("count")
        return pmids, int(count) if count is not None else None

    async def _efetch(self, pmids: list[str]) -> list[SearchResult]:
        client = await self._client()
        response = await client.get(
            f"{self._base_url}/efetch.fcgi",
            params={"db": "pubmed", "id": ",".join(pmids), "retmode": "xml"},
            api_key_rotator=self._key_rotator,
            api_key_param="api_key",
        )
        root = ET.fromstring(response.content)

        by_pmid: dict[str, SearchResult] = {}
        for article in root.iter("PubmedArticle"):
            result = article_to_result(article)
            if result is not None:
                by_pmid[result.id] = result

        # efetch does not promise esearch order; keep relevance order
        results = [by_pmid[p] for p in pmids if p in by_pmid]
        if len(results) < len(pmids):
            logger.debug(f"PubMed efetch returned {len(results)}/{len(pmids)} articles")
        return results
