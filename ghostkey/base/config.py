# ============================================================================
# ghostkey/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# One place for every tunable of the envelope core: blob store endpoints,
# retry policy, the on-chain approval policy that content ids are bound to,
# chain RPC, local persistence and logging.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: each section is immutable and hashable, so a section
#    can key a cache (see ghostkey.storage.blob_client.BlobClientCache)
# 2. Environment variables: GHOSTKEY_* overrides, read once by from_env()
# 3. Accessor pair: get_config()/set_config() for the shared instance, tests
#    inject their own
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ghostkey.errors import ConfigError

logger = logging.getLogger(__name__)


# Published marketplace package on testnet
DEFAULT_PACKAGE_ID = "0x0952e8bc1ea3b22ee1dab9e51a4197fb8fdea4cd80d418c946d305b82b6b2fb7"


# ============================================================================
# Blob Store Configuration
# ============================================================================
# Where encrypted envelopes are written (publisher) and read (aggregator).

@dataclass(frozen=True)
class BlobStoreConfig:
    # Write endpoint: PUT {publisher_url}/v1/blobs
    publisher_url: str = "https://publisher.walrus-testnet.walrus.space"

    # Read endpoint: GET {aggregator_url}/v1/blobs/{blob_id}
    aggregator_url: str = "https://aggregator.walrus-testnet.walrus.space"

    # Optional same-origin relay (see ghostkey.storage.relay); None = no relay
    relay_url: Optional[str] = None

    # How many storage epochs a new blob is paid for
    store_epochs: int = 5

    # Per-request timeout in seconds (uploads of large envelopes can be slow)
    request_timeout: float = 60.0

    user_agent: str = "GhostKey/1.0"


# ============================================================================
# Retry Configuration
# ============================================================================
# Backoff for 429/503 and transport failures:
#   delay(n) = min(base_delay * 2**n, max_delay), n = attempts made so far

@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3

    # Seconds
    base_delay: float = 1.0

    # Single canonical ceiling for every retry path
    max_delay: float = 10.0


# ============================================================================
# Seal Policy
# ============================================================================
# The on-chain function that approves decryption. Content ids are prefixed
# with {package_id}::{module_name}::{approval_function}:: and anything else is
# rejected before a decrypt is attempted.

@dataclass(frozen=True)
class SealPolicy:
    package_id: str = DEFAULT_PACKAGE_ID
    module_name: str = "marketplace"
    approval_function: str = "seal_approve_access"

    @property
    def prefix(self) -> str:
        return f"{self.package_id}::{self.module_name}::{self.approval_function}::"


# ============================================================================
# Chain Configuration
# ============================================================================

@dataclass(frozen=True)
class ChainConfig:
    # Full node JSON-RPC endpoint (used for the current epoch query)
    rpc_url: str = "https://fullnode.testnet.sui.io:443"

    # Derived identities stay valid for this many epochs past the current one
    validity_window_epochs: int = 10

    request_timeout: float = 15.0


# ============================================================================
# File Storage Configuration
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # Base directory for local state (~/.ghostkey/)
    base_dir: Path = field(default_factory=lambda: Path.home() / ".ghostkey")

    # SQLite file backing the persisted identity key-value store
    db_name: str = "identity.db"

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.db_name

    def ensure_dirs(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Also write to {base_dir}/{file_name} with rotation
    file_enabled: bool = False
    file_name: str = "ghostkey.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class GhostKeyConfig:
    blob_store: BlobStoreConfig = field(default_factory=BlobStoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    seal: SealPolicy = field(default_factory=SealPolicy)
    chain: ChainConfig = field(default_factory=ChainConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)
    debug: bool = False

    # Relay server bind address (ghostkey relay)
    relay_host: str = "127.0.0.1"
    relay_port: int = 8787

    @classmethod
    def from_env(cls) -> "GhostKeyConfig":
        """
        Build a GhostKeyConfig from GHOSTKEY_* environment variables.

        Unset variables fall back to the dataclass defaults. Numeric values that
        do not parse raise ConfigError naming the variable.
        """
        defaults_blob = BlobStoreConfig()
        blob_store = BlobStoreConfig(
            publisher_url=os.getenv("GHOSTKEY_PUBLISHER_URL", defaults_blob.publisher_url).rstrip("/"),
            aggregator_url=os.getenv("GHOSTKEY_AGGREGATOR_URL", defaults_blob.aggregator_url).rstrip("/"),
            relay_url=(os.getenv("GHOSTKEY_RELAY_URL") or None),
            store_epochs=_env_int("GHOSTKEY_STORE_EPOCHS", defaults_blob.store_epochs),
            request_timeout=_env_float("GHOSTKEY_REQUEST_TIMEOUT", defaults_blob.request_timeout),
        )

        retry = RetryConfig(
            max_attempts=_env_int("GHOSTKEY_RETRY_MAX_ATTEMPTS", 3),
            base_delay=_env_float("GHOSTKEY_RETRY_BASE_DELAY", 1.0),
            max_delay=_env_float("GHOSTKEY_RETRY_MAX_DELAY", 10.0),
        )
        if retry.max_attempts < 1:
            raise ConfigError(
                "GHOSTKEY_RETRY_MAX_ATTEMPTS must be at least 1",
                details={"value": retry.max_attempts},
            )

        seal = SealPolicy(
            package_id=os.getenv("GHOSTKEY_PACKAGE_ID", DEFAULT_PACKAGE_ID),
            module_name=os.getenv("GHOSTKEY_MODULE_NAME", "marketplace"),
            approval_function=os.getenv("GHOSTKEY_APPROVAL_FUNCTION", "seal_approve_access"),
        )

        chain = ChainConfig(
            rpc_url=os.getenv("GHOSTKEY_RPC_URL", ChainConfig.rpc_url),
            validity_window_epochs=_env_int("GHOSTKEY_VALIDITY_WINDOW_EPOCHS", 10),
        )

        storage = StorageConfig(
            base_dir=Path(os.getenv("GHOSTKEY_DATA_DIR", str(Path.home() / ".ghostkey"))),
        )

        log = LogConfig(
            level=os.getenv("GHOSTKEY_LOG_LEVEL", "INFO"),
            file_enabled=os.getenv("GHOSTKEY_LOG_FILE", "false").lower() == "true",
        )

        return cls(
            blob_store=blob_store,
            retry=retry,
            seal=seal,
            chain=chain,
            storage=storage,
            log=log,
            debug=os.getenv("GHOSTKEY_DEBUG", "false").lower() == "true",
            relay_host=os.getenv("GHOSTKEY_RELAY_HOST", "127.0.0.1"),
            relay_port=_env_int("GHOSTKEY_RELAY_PORT", 8787),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer", details={"value": raw}) from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number", details={"value": raw}) from None


# ============================================================================
# Shared Configuration
# ============================================================================

_config: Optional[GhostKeyConfig] = None


def get_config() -> GhostKeyConfig:
    """
    Get the shared configuration instance, loading it from the environment on
    first use.
    """
    global _config
    if _config is None:
        _config = GhostKeyConfig.from_env()
    return _config


def set_config(config: Optional[GhostKeyConfig]) -> None:
    """Replace the shared configuration (None forces a reload from env)."""
    global _config
    _config = config


def setup_logging(config: Optional[GhostKeyConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Console output always; a rotating file under the storage base_dir when
    log.file_enabled is set. Call once at process startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.ensure_dirs()
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
