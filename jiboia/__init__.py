"""HTTP ingestion, in-memory accumulation, object storages, external queues and metrics."""

__version__ = "0.0.1"