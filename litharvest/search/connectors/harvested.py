"""Connector over the local store of harvested OAI-PMH records."""

from litharvest.harvest.schemas import NormalizedRecord
from litharvest.search.connectors.base import ConnectorConfig, DatabaseConnector
from litharvest.search.schemas import SearchQuery, SearchResult
from litharvest.storage.repository import HarvestRepository


def record_to_result(record: NormalizedRecord) -> SearchResult:
    return SearchResult(
        id=f"{record.provider}:{record.record_id}",
        database_id="harvested",
        title=record.title,
        authors=[a.name for a in record.authors],
        abstract=record.abstract,
        journal=record.journal,
        doi=record.doi,
        publication_date=record.publication_date,
        keywords=list(record.keywords),
        url=record.url,
        metadata={
            "provider": record.provider,
            "record_id": record.record_id,
            "source_id": record.source_id,
            "is_open_access": record.is_open_access,
        },
    )


class HarvestedMetadataConnector(DatabaseConnector):
    """
    Federates harvested records alongside the live databases.

    When `providers` is set only those providers' records are searched,
    which is how institution subscriptions limit visibility. When
    `institution_id` is set the connector only serves records from that
    institution's sources, and only to users who belong to it.
    """

    def __init__(
        self,
        repository: HarvestRepository,
        config: ConnectorConfig | None = None,
        providers: list[str] | None = None,
        institution_id: str | None = None,
    ):
        config = config or ConnectorConfig(
            id="harvested",
            name="Harvested Metadata",
            auth_type="institutional",
            rate_limit=600,
        )
        super().__init__(config)
        self._repository = repository
        self._providers = [p.lower() for p in providers] if providers else None
        self._institution_id = institution_id

    async def validate_access(self, user_id: str | None) -> bool:
        if self._institution_id is None:
            return True
        if user_id is None:
            return False
        return self._institution_id in await self._repository.user_institutions(user_id)

    async def get_record(self, result_id: str) -> SearchResult | None:
        """
        Look up one record by the id this connector gives its results.

        Returns None for unknown ids, inactive records and records outside
        the connector's provider or institution scope.
        """
        provider, sep, record_id = result_id.partition(":")
        if not sep or not record_id:
            return None
        record = await self._repository.get_record(provider.lower(), record_id)
        if record is None or not record.is_active:
            return None
        if self._providers and record.provider not in self._providers:
            return None
        if self._institution_id is not None:
            if record.source_id is None:
                return None
            source = await self._repository.get_source(record.source_id)
            if source is None or source.institution_id != self._institution_id:
                return None
        return record_to_result(record)

    async def _search(self, query: SearchQuery, max_results: int) -> list[SearchResult]:
        date_range = query.filters.date_range
        records = await self._repository.search_records(
            query.term.strip(),
            limit=max_results,
            date_from=date_range.start if date_range else None,
            date_to=date_range.end if date_range else None,
            authors=list(query.filters.authors) or None,
            journals=list(query.filters.journals) or None,
            providers=self._providers,
            institution_id=self._institution_id,
        )
        return [record_to_result(r) for r in records]
