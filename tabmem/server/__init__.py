from __future__ import annotations

from .aggregator import SessionAggregator
from .api import build_api_handler, build_server, run_server
from .ingest import ingest_batch, validate_batch

__all__ = [
    "SessionAggregator",
    "build_api_handler",
    "build_server",
    "ingest_batch",
    "run_server",
    "validate_batch",
]
