"""agent-worker: long-running agent daemons with a shared collaboration context."""

__version__ = "0.1.0"
