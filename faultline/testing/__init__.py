"""Test doubles for running the harness without a real database."""

from faultline.testing.memory import InMemoryCluster, MemorySession, create_cluster

__all__ = ["InMemoryCluster", "MemorySession", "create_cluster"]
