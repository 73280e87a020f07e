"""Shared base for the bundled scenarios."""

from __future__ import annotations

from faultline.core.collaborator import DatabaseClient, Session
from faultline.orchestrator import ClusterTestOrchestrator
from faultline.testing.memory import InMemoryCluster


class BundledScenario(ClusterTestOrchestrator):
    """Runs against the in-memory cluster unless a client factory is configured."""

    seed_records: int = 1

    def create_client(self) -> DatabaseClient:
        if self.settings.client_factory is not None:
            return super().create_client()
        return InMemoryCluster()

    def on_after_database_creation(self, session: Session) -> None:
        for index in range(self.seed_records):
            session.execute(
                f"insert into {self.type_name}",
                {"key": f"seed-{index}", "name": f"Seed{index}", "surname": "Record"},
            )
