"""Tests for DatabaseRegistry."""

import pytest

from litharvest.search.registry import DatabaseRegistry


class TestDatabaseRegistry:
    """Tests for connector registration and selection."""

    def test_register_and_lookup(self, fake_connector):
        pubmed = fake_connector("pubmed")
        registry = DatabaseRegistry([pubmed])

        assert "pubmed" in registry
        assert registry.get("pubmed") is pubmed
        assert registry.get("scopus") is None
        assert len(registry) == 1

    def test_register_replaces_same_id(self, fake_connector):
        registry = DatabaseRegistry([fake_connector("pubmed")])
        replacement = fake_connector("pubmed")

        registry.register(replacement)

        assert len(registry) == 1
        assert registry.get("pubmed") is replacement

    def test_unregister(self, fake_connector):
        registry = DatabaseRegistry([fake_connector("pubmed")])

        assert registry.unregister("pubmed") is not None
        assert registry.unregister("pubmed") is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_get_enabled_filters_disabled_and_denied(self, fake_connector):
        denied = fake_connector("licensed")

        async def no_access(user_id):
            return user_id == "admin"

        denied.validate_access = no_access
        registry = DatabaseRegistry([
            fake_connector("pubmed"),
            fake_connector("arxiv", enabled=False),
            denied,
        ])

        assert [c.id for c in await registry.get_enabled("user-1")] == ["pubmed"]
        assert [c.id for c in await registry.get_enabled("admin")] == ["pubmed", "licensed"]

    @pytest.mark.asyncio
    async def test_failing_access_check_excludes_connector(self, fake_connector):
        broken = fake_connector("broken")

        async def explode(user_id):
            raise RuntimeError("license server down")

        broken.validate_access = explode
        registry = DatabaseRegistry([broken, fake_connector("pubmed")])

        assert [c.id for c in await registry.get_enabled("user-1")] == ["pubmed"]

    @pytest.mark.asyncio
    async def test_close_closes_all(self, fake_connector):
        connectors = [fake_connector("pubmed"), fake_connector("arxiv")]
        registry = DatabaseRegistry(connectors)

        await registry.close()

        assert all(c.closed for c in connectors)
