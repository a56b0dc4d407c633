"""Repository adapters - Store implementations."""

from .memory import InMemoryTrustStore
from .postgres import PostgresTrustStore, run_migrations

__all__ = ["InMemoryTrustStore", "PostgresTrustStore", "run_migrations"]
