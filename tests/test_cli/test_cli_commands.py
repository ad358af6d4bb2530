"""Tests for the litharvest CLI commands."""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from litharvest.cli import main
from litharvest.harvest.schemas import HarvestRun, HarvestSource, RunStatus
from litharvest.harvest.service import (
    HarvestAlreadyRunning,
    InvalidEndpointError,
    SourceNotFoundError,
)
from litharvest.search.schemas import SearchError, SearchResponse, SearchResult
from litharvest.storage.cache import MemoryCache


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def service():
    service = MagicMock()
    service.add_source = AsyncMock()
    service.remove_source = AsyncMock()
    service.trigger_harvest = AsyncMock()
    return service


@pytest.fixture
def stack(service):
    """Patch harvest_stack to yield the mocked service."""

    @asynccontextmanager
    async def fake_stack():
        yield service, MagicMock(), MemoryCache()

    with patch("litharvest.cli.harvest_stack", fake_stack):
        yield service


def _mock_db():
    db = MagicMock()
    db.connect = AsyncMock()
    db.close = AsyncMock()
    return db


class TestSourceCommands:
    """add-source and remove-source."""

    def test_add_source(self, runner, stack):
        stack.add_source.return_value = HarvestSource(
            id="src-9",
            name="Repo",
            endpoint="https://oai.example.org/request",
            filter_providers=["jstor", "proquest"],
        )

        result = runner.invoke(main, [
            "add-source", "Repo", "https://oai.example.org/request",
            "--provider", "jstor", "--provider", "proquest", "--frequency", "0 3 * * 1",
        ])

        assert result.exit_code == 0, result.output
        assert "Added source src-9" in result.output
        assert "jstor, proquest" in result.output
        kwargs = stack.add_source.await_args.kwargs
        assert kwargs["filter_providers"] == ["jstor", "proquest"]
        assert kwargs["harvest_frequency"] == "0 3 * * 1"

    def test_add_source_all_providers(self, runner, stack):
        stack.add_source.return_value = HarvestSource(
            id="src-9", name="Repo", endpoint="https://oai.example.org/request"
        )

        result = runner.invoke(main, [
            "add-source", "Repo", "https://oai.example.org/request", "--all-providers",
        ])

        assert result.exit_code == 0, result.output
        assert stack.add_source.await_args.kwargs["filter_providers"] == []
        assert "Providers: all" in result.output

    def test_add_source_bad_frequency(self, runner, stack):
        stack.add_source.side_effect = ValueError("Wrong number of fields")

        result = runner.invoke(main, [
            "add-source", "Repo", "https://oai.example.org/request", "--frequency", "daily",
        ])

        assert result.exit_code == 2
        assert "Wrong number of fields" in result.output

    def test_add_source_endpoint_fails_identify(self, runner, stack):
        stack.add_source.side_effect = InvalidEndpointError(
            "https://not-oai.example.org did not answer Identify: 404"
        )

        result = runner.invoke(main, ["add-source", "Repo", "https://not-oai.example.org"])

        assert result.exit_code == 2
        assert "did not answer Identify" in result.output
        assert stack.add_source.await_args.kwargs["verify"] is True

    def test_add_source_no_verify(self, runner, stack):
        stack.add_source.return_value = HarvestSource(
            id="src-9", name="Repo", endpoint="https://oai.example.org/request"
        )

        result = runner.invoke(main, [
            "add-source", "Repo", "https://oai.example.org/request", "--no-verify",
        ])

        assert result.exit_code == 0, result.output
        assert stack.add_source.await_args.kwargs["verify"] is False

    def test_remove_missing_source(self, runner, stack):
        stack.remove_source.side_effect = SourceNotFoundError("nope")

        result = runner.invoke(main, ["remove-source", "nope"])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestHarvestCommand:
    """harvest SOURCE_ID."""

    def test_completed_run(self, runner, stack):
        stack.trigger_harvest.return_value = HarvestRun(
            id="run-1",
            source_id="src-1",
            status=RunStatus.COMPLETED,
            records_processed=150,
            records_added=120,
        )

        result = runner.invoke(main, ["harvest", "src-1"])

        assert result.exit_code == 0, result.output
        assert "Run run-1: completed" in result.output
        assert "records_added: 120" in result.output

    def test_failed_run_exits_nonzero(self, runner, stack):
        stack.trigger_harvest.return_value = HarvestRun(
            id="run-2",
            source_id="src-1",
            status=RunStatus.FAILED,
            error_message="badResumptionToken",
        )

        result = runner.invoke(main, ["harvest", "src-1"])

        assert result.exit_code == 1
        assert "error: badResumptionToken" in result.output

    def test_already_running(self, runner, stack):
        stack.trigger_harvest.side_effect = HarvestAlreadyRunning("src-1")

        result = runner.invoke(main, ["harvest", "src-1"])

        assert result.exit_code == 1
        assert "already harvesting" in result.output


class TestReadCommands:
    """logs and providers read straight from the repository."""

    def test_logs(self, runner):
        repo = MagicMock()
        repo.get_harvest_logs = AsyncMock(return_value=([
            HarvestRun(
                id="run-1",
                source_id="src-1",
                started_at=datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
                status=RunStatus.FAILED,
                records_processed=10,
                error_message="shutdown requested",
            )
        ], 1))

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["logs", "src-1", "--page", "2", "--limit", "5"])

        assert result.exit_code == 0, result.output
        assert "2025-03-01 12:00:00" in result.output
        assert "shutdown requested" in result.output
        assert "Page 2, 1 of 1 runs" in result.output
        repo.get_harvest_logs.assert_awaited_once_with("src-1", page=2, limit=5)

    def test_logs_empty(self, runner):
        repo = MagicMock()
        repo.get_harvest_logs = AsyncMock(return_value=([], 0))

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["logs", "src-1"])

        assert "No harvest runs found." in result.output

    def test_providers(self, runner):
        repo = MagicMock()
        repo.get_providers = AsyncMock(return_value=[
            {"provider": "jstor", "record_count": 120},
            {"provider": "proquest", "record_count": 30},
        ])

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["providers", "--institution", "inst-1"])

        assert result.exit_code == 0, result.output
        assert "jstor" in result.output
        assert "120" in result.output
        repo.get_providers.assert_awaited_once_with("inst-1")

    def test_init_db(self, runner):
        repo = MagicMock()
        repo.create_tables = AsyncMock()

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["init-db"])

        assert result.exit_code == 0, result.output
        assert "Database initialized successfully" in result.output
        repo.create_tables.assert_awaited_once()


class TestSearchCommand:
    """search TERM."""

    def test_search_prints_results_and_errors(self, runner):
        aggregator = MagicMock()
        aggregator.close = AsyncMock()
        aggregator.search = AsyncMock(return_value=SearchResponse(
            results=[
                SearchResult(
                    id="111",
                    database_id="pubmed",
                    title="Gene editing in practice",
                    authors=["A", "B", "C", "D"],
                    journal="Nature",
                    doi="10.1038/nature.1",
                    publication_date=date(2021, 6, 15),
                )
            ],
            total=1,
            page=1,
            total_pages=1,
            databases_searched=["arxiv", "pubmed"],
            errors=[SearchError(source="arxiv", type="timeout", message="slow", retryable=True)],
        ))

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.cache.build_cache", return_value=MemoryCache()), \
             patch("litharvest.search.service.SearchAggregator", return_value=aggregator):
            result = runner.invoke(main, [
                "search", "crispr", "--database", "pubmed", "--database", "arxiv",
                "--author", "Doudna", "--from", "2020-01-01", "--limit", "5",
            ])

        assert result.exit_code == 0, result.output
        assert "1. [pubmed] Gene editing in practice" in result.output
        assert "A, B, C et al." in result.output
        assert "DOI: 10.1038/nature.1" in result.output
        assert "arxiv: timeout" in result.output

        user_id, query, databases = aggregator.search.await_args.args
        assert user_id is None
        assert databases == ["pubmed", "arxiv"]
        assert query.filters.authors == ("Doudna",)
        assert query.filters.date_range.start == date(2020, 1, 1)
        assert query.pagination.limit == 5
        aggregator.close.assert_awaited_once()

    def test_search_no_databases(self, runner):
        from litharvest.search.service import NoDatabasesAvailable

        aggregator = MagicMock()
        aggregator.close = AsyncMock()
        aggregator.search = AsyncMock(side_effect=NoDatabasesAvailable("No databases available"))

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.cache.build_cache", return_value=MemoryCache()), \
             patch("litharvest.search.service.SearchAggregator", return_value=aggregator):
            result = runner.invoke(main, ["search", "crispr", "--database", "scopus"])

        assert result.exit_code == 1
        assert "No databases available" in result.output

    def test_search_exports_bibtex_to_file(self, runner, tmp_path):
        aggregator = MagicMock()
        aggregator.close = AsyncMock()
        aggregator.search = AsyncMock(return_value=SearchResponse(
            results=[
                SearchResult(
                    id="111",
                    database_id="pubmed",
                    title="Gene editing in practice",
                    authors=["Doudna, J"],
                    journal="Nature",
                    abstract="Edits.",
                    publication_date=date(2021, 6, 15),
                )
            ],
            total=1,
            page=1,
            total_pages=1,
            databases_searched=["pubmed"],
            errors=[SearchError(source="arxiv", type="timeout", message="slow", retryable=True)],
        ))
        target = tmp_path / "out.bib"

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.cache.build_cache", return_value=MemoryCache()), \
             patch("litharvest.search.service.SearchAggregator", return_value=aggregator):
            result = runner.invoke(main, [
                "search", "crispr", "--format", "bibtex", "--abstracts", "-o", str(target),
            ])

        assert result.exit_code == 0, result.output
        written = target.read_text()
        assert written.startswith("@article{doudna2021gene,")
        assert "abstract = {Edits.}" in written
        assert "Searching for" not in result.output

    def test_search_exports_csv_to_stdout(self, runner):
        aggregator = MagicMock()
        aggregator.close = AsyncMock()
        aggregator.search = AsyncMock(return_value=SearchResponse(
            results=[SearchResult(id="2101.1", database_id="arxiv", title="Graphs")],
            total=1,
            page=1,
            total_pages=1,
            databases_searched=["arxiv"],
        ))

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.cache.build_cache", return_value=MemoryCache()), \
             patch("litharvest.search.service.SearchAggregator", return_value=aggregator):
            result = runner.invoke(main, ["search", "graphs", "--format", "csv"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("id,database,title")
        assert lines[1].startswith("2101.1,arxiv,Graphs")

    def test_search_rejects_unknown_format(self, runner):
        result = runner.invoke(main, ["search", "x", "--format", "ris"])

        assert result.exit_code == 2


class TestRecordCommand:
    """record RESULT_ID."""

    @pytest.fixture
    def repo(self):
        from litharvest.harvest.schemas import NormalizedRecord, RecordAuthor

        repo = MagicMock()
        repo.get_record = AsyncMock(return_value=NormalizedRecord(
            provider="jstor",
            record_id="oai:x:1",
            title="Harvested title",
            authors=[RecordAuthor(name="Doe, Jane")],
            doi="10.1000/x",
            source_id="src-1",
        ))
        return repo

    def test_shows_record(self, runner, repo):
        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["record", "jstor:oai:x:1"])

        assert result.exit_code == 0, result.output
        assert "Harvested title" in result.output
        assert "DOI:       10.1000/x" in result.output
        repo.get_record.assert_awaited_once_with("jstor", "oai:x:1")

    def test_unknown_record(self, runner, repo):
        repo.get_record.return_value = None

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["record", "jstor:missing"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_scoped_deployment_denies_outsiders(self, runner, repo, monkeypatch):
        monkeypatch.setenv("SEARCH_HARVESTED_INSTITUTION_ID", "inst-1")
        repo.user_institutions = AsyncMock(return_value=["inst-2"])

        with patch("litharvest.storage.database.Database", return_value=_mock_db()), \
             patch("litharvest.storage.repository.HarvestRepository", return_value=repo):
            result = runner.invoke(main, ["record", "jstor:oai:x:1", "--user", "u-1"])

        assert result.exit_code == 1
        assert "Access denied" in result.output
        repo.get_record.assert_not_awaited()
