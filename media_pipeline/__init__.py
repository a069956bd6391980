"""Media ingestion pipeline: job store, work queue, orchestrator and recovery."""

__version__ = "0.1.0"
