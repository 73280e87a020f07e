from enum import StrEnum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StartMode(StrEnum):
    """How the orchestrator brings nodes up."""

    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"


class SeedMode(StrEnum):
    """How seeded data reaches the non-seed nodes."""

    COPY = "copy"  # copy the seed node's data directory before the others start
    REPLICATE = "replicate"  # start everyone, seed one node, wait for convergence


class TeardownMode(StrEnum):
    SHUTDOWN = "shutdown"
    CRASH = "crash"


class HarnessSettings(BaseSettings):
    """faultline harness configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="FAULTLINE_", env_file=".env", extra="ignore"
    )

    root_dir: Path = Field(
        Path("target/faultline"),
        description="Per-test root; each node gets <root_dir>/<node_id>.",
    )
    database_name: str = Field(
        "faultline-test", description="Database shared by every node of the run."
    )
    host: str = Field("127.0.0.1", description="Interface nodes and relays bind to.")
    node_command: list[str] = Field(
        default_factory=list,
        description="Argv template used to launch a node process; fields like "
        "{node_id}, {data_dir}, {config_file}, {client_port} are filled per node.",
    )
    start_mode: StartMode = Field(
        StartMode.SEQUENTIAL, description="Start nodes one by one or all at once."
    )
    start_delay: float = Field(
        0.0, description="Seconds to wait between nodes in sequential start."
    )
    seed_mode: SeedMode = Field(
        SeedMode.COPY, description="Cold-copy seeded data or let replication converge."
    )
    use_proxy: bool = Field(
        False, description="Route inter-node traffic through the partition proxy."
    )
    proxy_client_ports: bool = Field(
        False, description="Also route client connections through the proxy."
    )
    announcement_marker: str = Field(
        "",
        description="Hex marker preceding address announcements to rewrite in "
        "relayed membership traffic; empty disables rewriting.",
    )
    readiness_timeout: float = Field(
        30.0, description="Seconds a node may take to report readiness."
    )
    poll_interval: float = Field(
        0.2, description="Seconds between condition polls."
    )
    shutdown_grace: float = Field(
        10.0, description="Seconds a graceful shutdown may take before a kill."
    )
    execution_timeout: float = Field(
        600.0, description="Hard ceiling in seconds for the whole run phase."
    )
    convergence_timeout: float = Field(
        20.0, description="Seconds allowed for replicas to converge after a fault."
    )
    teardown_mode: TeardownMode = Field(
        TeardownMode.SHUTDOWN, description="How nodes are stopped at teardown."
    )
    max_retries: int = Field(
        5, description="Default per-operation retry budget for workload drivers."
    )
    retry_backoff: float = Field(
        0.05, description="Base back-off in seconds between driver retries."
    )
    log_level: str = Field("INFO", description="loguru level for the stderr sink.")
    debug_scopes: list[str] = Field(
        default_factory=list,
        description="Modules whose DEBUG records are always emitted.",
    )
    client_factory: str | None = Field(
        None,
        description="'module:callable' returning the DatabaseClient for the "
        "cluster-under-test.",
    )
