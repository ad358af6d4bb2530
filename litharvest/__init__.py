"""litharvest - OAI-PMH metadata harvesting and federated literature search."""

__version__ = "0.1.0"
