"""Registry of search connectors keyed by connector id."""

import logging

from litharvest.search.connectors.base import DatabaseConnector

logger = logging.getLogger(__name__)


class DatabaseRegistry:
    """
    Holds the connectors known to this process.

    Connectors are constructed once at startup and passed in; the
    registry never builds them itself.
    """

    def __init__(self, connectors: list[DatabaseConnector] | None = None):
        self._connectors: dict[str, DatabaseConnector] = {}
        for connector in connectors or []:
            self.register(connector)

    def register(self, connector: DatabaseConnector) -> None:
        if connector.id in self._connectors:
            logger.warning(f"Replacing registered connector {connector.id}")
        self._connectors[connector.id] = connector

    def unregister(self, connector_id: str) -> DatabaseConnector | None:
        return self._connectors.pop(connector_id, None)

    def get(self, connector_id: str) -> DatabaseConnector | None:
        return self._connectors.get(connector_id)

    def all(self) -> list[DatabaseConnector]:
        return list(self._connectors.values())

    def __len__(self) -> int:
        return len(self._connectors)

    def __contains__(self, connector_id: str) -> bool:
        return connector_id in self._connectors

    async def get_enabled(self, user_id: str | None = None) -> list[DatabaseConnector]:
        """
        Connectors that are enabled and that this user may query.

        A connector whose checks raise is left out for this call.
        """
        enabled = []
        for connector in self._connectors.values():
            try:
                if not await connector.is_enabled():
                    continue
                if not await connector.validate_access(user_id):
                    logger.debug(f"User {user_id} has no access to {connector.id}")
                    continue
            except Exception as e:
                logger.warning(f"Excluding connector {connector.id}: access check failed: {e}")
                continue
            enabled.append(connector)
        return enabled

    async def close(self) -> None:
        for connector in self._connectors.values():
            await connector.close()
