"""
Configuration management for MAO.

Supports loading configuration from:
1. YAML configuration file (mao.yaml)
2. Environment variables (prefixed with MAO_)
3. Constructor arguments / CLI flags (highest priority)

Configuration hierarchy (highest to lowest priority):
    CLI flags > Environment variables > YAML file > Defaults

Agent and global settings (personality, quorum, queue limit, ...) are runtime
state owned by the orchestrator, not configuration; they are changed through
`Orchestrator.save_settings`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("mao.config")

DEFAULT_CONFIG_FILE = "mao.yaml"


@dataclass
class BusConfig:
    """Configuration for the Message Bus."""
    history_size: int = 100


@dataclass
class SchedulerConfig:
    """Configuration for the Task Scheduler and its runtime loop."""
    tick_interval: float = 0.5  # seconds between scheduling passes
    max_retry_delay_ms: float = 30_000.0


@dataclass
class ConsensusConfig:
    """Configuration for the Consensus Engine."""
    default_ttl: float = 10.0  # seconds


@dataclass
class KnowledgeConfig:
    """Configuration for the Knowledge Store."""
    default_confidence: float = 50.0


@dataclass
class OrchestratorConfig:
    """Configuration for the Orchestrator façade."""
    auto_recover: bool = True
    event_history: int = 1000


@dataclass
class StorageConfig:
    """Configuration for state persistence."""
    backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"


@dataclass
class ServerConfig:
    """Configuration for the HTTP / WebSocket server."""
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"


@dataclass
class MAOConfig:
    """Top-level configuration for MAO."""
    bus: BusConfig = field(default_factory=BusConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "MAOConfig":
        """
        Load configuration from file and environment variables.

        Args:
            config_path: Path to a YAML configuration file.
                         If None, looks for 'mao.yaml' in the current directory.

        Returns:
            A fully resolved MAOConfig instance.
        """
        config = cls()

        # Step 1: Load from YAML file
        config_path = Path(config_path) if config_path is not None else Path(DEFAULT_CONFIG_FILE)
        if config_path.exists():
            config = _load_yaml(config_path, config)
            logger.info("Loaded config from %s", config_path)

        # Step 2: Override with environment variables
        config = _apply_env_overrides(config)

        return config

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def dump_yaml(self, path: str | Path) -> None:
        """Write this configuration as a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)


def _load_yaml(path: Path, config: MAOConfig) -> MAOConfig:
    """Load configuration from a YAML file; unknown keys are ignored with a warning."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    for section_name, values in data.items():
        section = getattr(config, section_name, None)
        if section is None or not isinstance(values, dict):
            logger.warning("Ignoring unknown config section '%s'", section_name)
            continue
        for key, value in values.items():
            if not hasattr(section, key):
                logger.warning("Ignoring unknown config key '%s.%s'", section_name, key)
                continue
            setattr(section, key, value)

    return config


def _apply_env_overrides(config: MAOConfig) -> MAOConfig:
    """Override configuration with environment variables."""
    # Bus
    if val := os.environ.get("MAO_BUS_HISTORY_SIZE"):
        config.bus.history_size = int(val)

    # Scheduler
    if val := os.environ.get("MAO_TICK_INTERVAL"):
        config.scheduler.tick_interval = float(val)
    if val := os.environ.get("MAO_MAX_RETRY_DELAY_MS"):
        config.scheduler.max_retry_delay_ms = float(val)

    # Consensus
    if val := os.environ.get("MAO_CONSENSUS_TTL"):
        config.consensus.default_ttl = float(val)

    # Orchestrator
    if val := os.environ.get("MAO_AUTO_RECOVER"):
        config.orchestrator.auto_recover = val.lower() in ("1", "true", "yes", "on")

    # Storage
    if val := os.environ.get("MAO_STORAGE_BACKEND"):
        config.storage.backend = val
    if val := os.environ.get("MAO_REDIS_URL"):
        config.storage.redis_url = val

    # Server
    if val := os.environ.get("MAO_HOST"):
        config.server.host = val
    if val := os.environ.get("MAO_PORT"):
        config.server.port = int(val)

    # Logging
    if val := os.environ.get("MAO_LOG_LEVEL"):
        config.logging.level = val

    return config
