"""
DOI enrichment from the Crossref REST API.

Read-through cache keyed ``enrich:{doi}``; successful lookups are kept
for at least a week since metadata for a published DOI barely changes.
Enrichment is best-effort: every failure is logged and turned into None
so it can never fail the harvest run that asked for it.
"""

import logging
import re
from datetime import date
from typing import Any
from urllib.parse import quote

from litharvest.config.settings import Settings, get_settings
from litharvest.harvest.schemas import RecordAuthor, RecordPatch
from litharvest.net.http_client import HTTPClient, HTTPClientError, RetryConfig
from litharvest.net.rate_limit import RateLimiter
from litharvest.observability.metrics import get_metrics
from litharvest.storage.cache import CacheBackend

logger = logging.getLogger(__name__)

CACHE_PREFIX = "enrich:"
_TAG_RE = re.compile(r"<[^>]+>")


def cache_key(doi: str) -> str:
    return f"{CACHE_PREFIX}{doi.strip().lower()}"


def _date_from_parts(message: dict[str, Any]) -> date | None:
    for key in ("published", "published-print", "published-online", "issued"):
        parts = (message.get(key) or {}).get("date-parts") or []
        if not parts or not parts[0] or parts[0][0] is None:
            continue
        values = [int(p) for p in parts[0][:3]]
        year = values[0]
        month = values[1] if len(values) > 1 else 1
        day = values[2] if len(values) > 2 else 1
        try:
            return date(year, month, day)
        except ValueError:
            return date(year, 1, 1)
    return None


def _clean_abstract(raw: str | None) -> str | None:
    if not raw:
        return None
    text = " ".join(_TAG_RE.sub(" ", raw).split())
    if text.lower().startswith("abstract "):
        text = text[len("abstract "):]
    return text or None


def _first(values: Any) -> str | None:
    if isinstance(values, list):
        return next((v for v in values if isinstance(v, str) and v.strip()), None)
    return values if isinstance(values, str) and values.strip() else None


def crossref_to_patch(message: dict[str, Any]) -> RecordPatch:
    """Map a Crossref ``message`` object to a RecordPatch."""
    authors = []
    for author in message.get("author") or []:
        name = author.get("name") or " ".join(
            p for p in (author.get("given"), author.get("family")) if p
        )
        if not name:
            continue
        affiliations = author.get("affiliation") or []
        authors.append(RecordAuthor(
            name=name,
            identifier=author.get("ORCID"),
            affiliation=affiliations[0].get("name") if affiliations else None,
        ))

    licenses = message.get("license") or []
    open_access = bool(message.get("is_open_access")) or any(
        "creativecommons.org" in (lic.get("URL") or "") for lic in licenses
    )

    extra = {
        k: v
        for k, v in (
            ("publisher", message.get("publisher")),
            ("type", message.get("type")),
            ("crossref_citations", message.get("is-referenced-by-count")),
        )
        if v is not None
    }

    return RecordPatch(
        title=_first(message.get("title")),
        abstract=_clean_abstract(message.get("abstract")),
        authors=authors,
        publication_date=_date_from_parts(message),
        journal=_first(message.get("container-title")),
        url=message.get("URL"),
        keywords=[s for s in message.get("subject") or [] if isinstance(s, str)],
        is_open_access=open_access or None,
        additional_metadata=extra,
    )


class CrossrefEnricher:
    """
    Best-effort Crossref lookups with a read-through cache.

    Usage:
        async with CrossrefEnricher(cache) as enricher:
            patch = await enricher.enrich("10.2307/1234")
    """

    def __init__(
        self,
        cache: CacheBackend | None,
        cache_ttl: int = 7 * 24 * 3600,
        settings: Settings | None = None,
        http_client: HTTPClient | None = None,
    ):
        settings = settings or get_settings()
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._base_url = settings.crossref_base_url.rstrip("/")
        self._rate_limiter = RateLimiter(rate=settings.crossref_rate_limit)
        self._owns_client = http_client is None
        self._http = http_client or HTTPClient(
            retry_config=RetryConfig(
                max_retries=settings.max_http_retries,
                max_backoff_seconds=settings.max_backoff_seconds,
            ),
            timeout=20.0,
            headers=settings.crossref_headers,
        )
        self._metrics = get_metrics()

    async def __aenter__(self) -> "CrossrefEnricher":
        if not self._http.is_open:
            await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._owns_client:
            await self._http.close()

    async def enrich(self, doi: str) -> RecordPatch | None:
        """Return a partial record for a DOI, or None on any failure."""
        if not doi:
            return None
        key = cache_key(doi)

        cached = await self._cache_get(key)
        if cached is not None:
            self._metrics.record_enrichment("cache_hit")
            return cached

        await self._rate_limiter.acquire()
        url = f"{self._base_url}/works/{quote(doi.strip(), safe='/')}"
        try:
            response = await self._http.get(url)
            message = response.json().get("message")
            if not isinstance(message, dict):
                raise ValueError("response has no message object")
            patch = crossref_to_patch(message)
        except HTTPClientError as e:
            result = "not_found" if e.status_code == 404 else "error"
            self._metrics.record_enrichment(result)
            logger.warning(f"Crossref lookup failed for {doi}: {e}")
            return None
        except (ValueError, TypeError, AttributeError) as e:
            self._metrics.record_enrichment("error")
            logger.warning(f"Unusable Crossref payload for {doi}: {e}")
            return None

        self._metrics.record_enrichment("fetched")
        if self._cache is not None:
            await self._cache.set(key, patch.model_dump(mode="json"), self._cache_ttl)
        return patch

    async def _cache_get(self, key: str) -> RecordPatch | None:
        if self._cache is None:
            return None
        try:
            data = await self._cache.get(key)
            return RecordPatch.model_validate(data) if data else None
        except Exception as e:
            logger.warning(f"Ignoring enrichment cache entry {key}: {e}")
            return None
