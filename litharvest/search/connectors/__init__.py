"""Search connectors, one per external index."""

from litharvest.search.connectors.arxiv import ArxivConnector
from litharvest.search.connectors.base import (
    RETRYABLE_ERROR_TYPES,
    ConnectorConfig,
    ConnectorError,
    ConnectorErrorType,
    ConnectorHits,
    ConnectorRetryPolicy,
    DatabaseConnector,
)
from litharvest.search.connectors.pubmed import PubMedConnector

__all__ = [
    "ArxivConnector",
    "ConnectorConfig",
    "ConnectorError",
    "ConnectorErrorType",
    "ConnectorHits",
    "ConnectorRetryPolicy",
    "DatabaseConnector",
    "PubMedConnector",
    "RETRYABLE_ERROR_TYPES",
]
