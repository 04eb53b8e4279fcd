"""
Configuration for bridgerelay.

Dataclass configuration for the two chains, the ledger, the relay workers
and the reconciliation scanners. Values come from a JSON file and are then
overridden by ``BRIDGERELAY_*`` environment variables.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigurationError
from .logging import LogConfig, LogLevel


@dataclass
class ChainConfig:
    """One chain endpoint and its token contract."""

    name: str = "chain"
    chain_id: int = 1
    rpc_url: str = "http://localhost:8545"
    contract_address: str = "0x0000000000000000000000000000000000000000"
    enable_poa_middleware: bool = False
    timeout_seconds: float = 30.0
    retry_attempts: int = 5
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    poll_interval: float = 2.0
    max_log_range: int = 1000
    start_block: Optional[int] = None


@dataclass
class LedgerConfig:
    """Event ledger storage."""

    database_path: str = "bridgerelay.db"
    connection_timeout: float = 30.0
    synchronous: str = "FULL"
    journal_mode: str = "WAL"


@dataclass
class WorkerConfig:
    """Relay worker behaviour, shared by both directions."""

    max_submit_attempts: int = 3
    min_confirmations: int = 3
    confirmation_timeout: float = 600.0
    confirmation_poll_interval: float = 3.0
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0
    poll_interval: float = 1.0
    batch_size: int = 50


@dataclass
class ScannerConfig:
    """Reconciliation scanner behaviour, shared by both chains."""

    batch_size: int = 500
    poll_interval: float = 15.0
    max_reorg_depth: int = 64


@dataclass
class LogSettings:
    """Logging output."""

    level: str = "info"
    format_type: str = "text"
    log_file: Optional[str] = None

    def to_log_config(self) -> LogConfig:
        try:
            level = LogLevel(self.level.lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown log level: {self.level}", config_key="logging.level", cause=e
            ) from e
        handlers = ["console"] + (["file"] if self.log_file else [])
        return LogConfig(
            name="bridgerelay",
            level=level,
            format_type=self.format_type,
            handlers=handlers,
            log_file=self.log_file,
        )


_SECTIONS = {
    "chain_a": ChainConfig,
    "chain_b": ChainConfig,
    "ledger": LedgerConfig,
    "worker": WorkerConfig,
    "scanner": ScannerConfig,
    "logging": LogSettings,
}


@dataclass
class RelayConfig:
    """Complete relay configuration."""

    chain_a: ChainConfig = field(default_factory=lambda: ChainConfig(name="A", chain_id=1))
    chain_b: ChainConfig = field(default_factory=lambda: ChainConfig(name="B", chain_id=2))
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    logging: LogSettings = field(default_factory=LogSettings)
    key_file: Optional[str] = None

    # Environment overrides applied, by variable name
    environment_overrides: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Apply environment variable overrides."""
        self._apply_environment_overrides()

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides."""
        env_mappings: Dict[str, Tuple[str, str, type]] = {
            "BRIDGERELAY_CHAIN_A_RPC_URL": ("chain_a", "rpc_url", str),
            "BRIDGERELAY_CHAIN_A_CHAIN_ID": ("chain_a", "chain_id", int),
            "BRIDGERELAY_CHAIN_A_CONTRACT": ("chain_a", "contract_address", str),
            "BRIDGERELAY_CHAIN_A_START_BLOCK": ("chain_a", "start_block", int),
            "BRIDGERELAY_CHAIN_B_RPC_URL": ("chain_b", "rpc_url", str),
            "BRIDGERELAY_CHAIN_B_CHAIN_ID": ("chain_b", "chain_id", int),
            "BRIDGERELAY_CHAIN_B_CONTRACT": ("chain_b", "contract_address", str),
            "BRIDGERELAY_CHAIN_B_START_BLOCK": ("chain_b", "start_block", int),
            "BRIDGERELAY_DATABASE": ("ledger", "database_path", str),
            "BRIDGERELAY_MIN_CONFIRMATIONS": ("worker", "min_confirmations", int),
            "BRIDGERELAY_MAX_SUBMIT_ATTEMPTS": ("worker", "max_submit_attempts", int),
            "BRIDGERELAY_SCAN_INTERVAL": ("scanner", "poll_interval", float),
            "BRIDGERELAY_MAX_REORG_DEPTH": ("scanner", "max_reorg_depth", int),
            "BRIDGERELAY_LOG_LEVEL": ("logging", "level", str),
            "BRIDGERELAY_LOG_FORMAT": ("logging", "format_type", str),
            "BRIDGERELAY_LOG_FILE": ("logging", "log_file", str),
            "BRIDGERELAY_KEY_FILE": (None, "key_file", str),
        }

        for env_var, (section, attr_name, attr_type) in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            try:
                value = attr_type(env_value)
            except (ValueError, TypeError) as e:
                raise ConfigurationError(
                    f"Invalid environment variable {env_var}={env_value}: {e}",
                    config_key=env_var,
                    config_value=env_value,
                    cause=e,
                ) from e
            target = getattr(self, section) if section else self
            setattr(target, attr_name, value)
            self.environment_overrides[env_var] = value

    def validate(self) -> None:
        """Reject configurations the relay cannot run with."""
        if self.chain_a.chain_id == self.chain_b.chain_id:
            raise ConfigurationError(
                "The two chains must have distinct chain ids",
                config_key="chain_b.chain_id",
                config_value=self.chain_b.chain_id,
            )
        if self.worker.max_submit_attempts < 1:
            raise ConfigurationError(
                "max_submit_attempts must be at least 1",
                config_key="worker.max_submit_attempts",
                config_value=self.worker.max_submit_attempts,
            )
        if self.worker.min_confirmations < 1:
            raise ConfigurationError(
                "min_confirmations must be at least 1",
                config_key="worker.min_confirmations",
                config_value=self.worker.min_confirmations,
            )
        if self.scanner.batch_size < 1:
            raise ConfigurationError(
                "scanner batch_size must be at least 1",
                config_key="scanner.batch_size",
                config_value=self.scanner.batch_size,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = asdict(self)
        data.pop("environment_overrides", None)
        return data

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "RelayConfig":
        """Create configuration from dictionary."""
        kwargs: Dict[str, Any] = {}
        for key, value in config_dict.items():
            section_cls = _SECTIONS.get(key)
            if section_cls is not None:
                known = {f.name for f in fields(section_cls)}
                unknown = set(value) - known
                if unknown:
                    raise ConfigurationError(
                        f"Unknown keys in section '{key}': {sorted(unknown)}",
                        config_key=key,
                    )
                kwargs[key] = section_cls(**value)
            elif key == "key_file":
                kwargs[key] = value
            else:
                raise ConfigurationError(f"Unknown configuration key: {key}", config_key=key)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str) -> "RelayConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Configuration file not found: {path}", config_key="config", cause=e
            ) from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Configuration file is not valid JSON: {path}: {e}",
                config_key="config",
                cause=e,
            ) from e
        config = cls.from_dict(data)
        if (
            config.key_file
            and not os.path.isabs(config.key_file)
            and "BRIDGERELAY_KEY_FILE" not in config.environment_overrides
        ):
            config.key_file = str(Path(path).parent / config.key_file)
        return config
