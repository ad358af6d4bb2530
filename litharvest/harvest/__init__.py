"""Harvesting pipeline: OAI-PMH client, parsers, merge, enrichment, runs and scheduling."""

from litharvest.harvest.config import HarvestConfig
from litharvest.harvest.controller import HarvestRunController
from litharvest.harvest.enrichment import CrossrefEnricher
from litharvest.harvest.merge import MergeConflict, RecordMerger, merge_records
from litharvest.harvest.parsers import ParseError, infer_provider, parse_record
from litharvest.harvest.protocol import ListPage, OAIPMHClient, ProtocolError
from litharvest.harvest.scheduler import HarvestScheduler
from litharvest.harvest.schemas import (
    HarvestRun,
    HarvestSource,
    NormalizedRecord,
    RecordAuthor,
    RecordPatch,
    RunStatus,
    SourceStatus,
    UpsertAction,
)

__all__ = [
    "CrossrefEnricher",
    "HarvestConfig",
    "HarvestRun",
    "HarvestRunController",
    "HarvestScheduler",
    "HarvestSource",
    "ListPage",
    "MergeConflict",
    "NormalizedRecord",
    "OAIPMHClient",
    "ParseError",
    "ProtocolError",
    "RecordAuthor",
    "RecordMerger",
    "RecordPatch",
    "RunStatus",
    "SourceStatus",
    "UpsertAction",
    "infer_provider",
    "merge_records",
    "parse_record",
]
