"""Configuration management for cartridge storage clients."""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from common.constants import (
    CATALOG_ADDRESSES,
    DEFAULT_CACHE_MAX_BYTES,
    DEFAULT_CONCURRENCY,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RATE_LIMIT,
    NIMIQ_DEFAULT_FEE,
    NIMIQ_DEFAULT_RPC_URL,
    SOLANA_DEFAULT_RPC_URL,
    SUI_DEFAULT_RPC_URL,
    WALRUS_DEFAULT_AGGREGATOR,
    WALRUS_DEFAULT_EPOCHS,
    WALRUS_DEFAULT_PUBLISHER,
)
from common.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".cartstore" / "config.json"

_DEFAULT_RPC_URLS = {
    "nimiq": NIMIQ_DEFAULT_RPC_URL,
    "solana": SOLANA_DEFAULT_RPC_URL,
    "sui": SUI_DEFAULT_RPC_URL,
}


class Config:
    """Manages client configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "protocol": os.environ.get("CARTSTORE_PROTOCOL", "nimiq"),
        "rpc_url": os.environ.get("CARTSTORE_RPC_URL", ""),
        "catalog": os.environ.get("CARTSTORE_CATALOG", "main"),
        "publisher": os.environ.get("CARTSTORE_PUBLISHER", ""),
        "wallet": os.environ.get("CARTSTORE_WALLET", ""),
        "fee": int(os.environ.get("CARTSTORE_FEE", str(NIMIQ_DEFAULT_FEE))),
        "timeout": 30,
        "max_retries": 3,
        "retry_backoff_multiplier": 2,
        "page_size": DEFAULT_PAGE_SIZE,
        "rate_limit": DEFAULT_RATE_LIMIT,
        "concurrency": DEFAULT_CONCURRENCY,
        "progress_dir": os.environ.get("CARTSTORE_PROGRESS_DIR", "."),
        "cache_path": os.environ.get("CARTSTORE_CACHE_PATH", ""),
        "cache_max_bytes": DEFAULT_CACHE_MAX_BYTES,
        "walrus_aggregator": WALRUS_DEFAULT_AGGREGATOR,
        "walrus_publisher": WALRUS_DEFAULT_PUBLISHER,
        "walrus_epochs": WALRUS_DEFAULT_EPOCHS,
        "sui_catalog_id": os.environ.get("CARTSTORE_SUI_CATALOG_ID", ""),
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (default ~/.cartstore/config.json)
        """
        self.config_path = Path(config_path or DEFAULT_CONFIG_PATH)
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            self.config_path = Path(tempfile.gettempdir()) / ".cartstore" / "config.json"
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                config = self.DEFAULT_CONFIG.copy()
                config.update(data)
                return config
            except (json.JSONDecodeError, IOError) as e:
                backup_path = self.config_path.with_suffix(".json.bak")
                logger.warning(f"Config file unreadable, backing up to {backup_path}: {e}")
                try:
                    shutil.copy(self.config_path, backup_path)
                except OSError as copy_error:
                    logger.warning(f"Config backup failed: {copy_error}")
                return self.DEFAULT_CONFIG.copy()

        config = self.DEFAULT_CONFIG.copy()
        try:
            with open(self.config_path, "w") as f:
                json.dump(config, f, indent=2)
        except IOError as e:
            logger.warning(f"Could not write default config to {self.config_path}: {e}")
        return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, "w") as f:
                json.dump(self.data, f, indent=2)
        except IOError as e:
            logger.warning(f"Could not save config to {self.config_path}: {e}")

    def set(self, key: str, value) -> None:
        """Set a value and save to file."""
        self.data[key] = value
        self.save()

    def get_protocol(self) -> str:
        """
        Get the selected backend.

        Returns:
            One of "nimiq", "solana", "sui" or "memory"
        """
        return str(self.data.get("protocol", "nimiq")).lower()

    def get_rpc_url(self) -> str:
        """
        Get the JSON-RPC endpoint, falling back to the backend default.

        Returns:
            Endpoint URL
        """
        return self.data.get("rpc_url") or _DEFAULT_RPC_URLS.get(self.get_protocol(), "")

    def get_catalog_address(self) -> str:
        """
        Resolve the catalog address, expanding the "main" and "test" shortcuts.

        The Sui backend uses `sui_catalog_id` when it is set.

        Returns:
            Catalog address
        """
        if self.get_protocol() == "sui" and self.data.get("sui_catalog_id"):
            return self.data["sui_catalog_id"]
        return resolve_catalog_address(self.data.get("catalog", "main"))

    def get_publisher(self) -> Optional[str]:
        """Expected publisher address, or None to accept any writer."""
        return self.data.get("publisher") or None

    def get_timeout(self) -> int:
        """
        Get request timeout in seconds.

        Returns:
            Timeout value in seconds
        """
        return self.data.get("timeout", 30)

    def get_retry_config(self) -> dict:
        """
        Get retry configuration.

        Returns:
            Dictionary with 'max_retries' and 'retry_backoff_multiplier'
        """
        return {
            "max_retries": self.data.get("max_retries", 3),
            "retry_backoff_multiplier": self.data.get("retry_backoff_multiplier", 2),
        }

    def get_page_size(self) -> int:
        return int(self.data.get("page_size", DEFAULT_PAGE_SIZE))

    def get_upload_config(self) -> dict:
        """
        Get upload tuning.

        Returns:
            Dictionary with 'rate_limit', 'concurrency', 'wallet' and 'fee'
        """
        return {
            "rate_limit": float(self.data.get("rate_limit", DEFAULT_RATE_LIMIT)),
            "concurrency": int(self.data.get("concurrency", DEFAULT_CONCURRENCY)),
            "wallet": self.data.get("wallet", ""),
            "fee": int(self.data.get("fee", NIMIQ_DEFAULT_FEE)),
        }

    def get_cache_config(self) -> dict:
        """
        Get download cache settings.

        Returns:
            Dictionary with 'path' (next to the config file by default) and 'max_bytes'
        """
        path = self.data.get("cache_path") or str(self.config_path.parent / "cache.db")
        return {
            "path": path,
            "max_bytes": int(self.data.get("cache_max_bytes", DEFAULT_CACHE_MAX_BYTES)),
        }

    def get_walrus_config(self) -> dict:
        return {
            "aggregator": self.data.get("walrus_aggregator", WALRUS_DEFAULT_AGGREGATOR),
            "publisher": self.data.get("walrus_publisher", WALRUS_DEFAULT_PUBLISHER),
            "epochs": int(self.data.get("walrus_epochs", WALRUS_DEFAULT_EPOCHS)),
        }

    def get_progress_dir(self) -> Path:
        return Path(self.data.get("progress_dir", "."))


def resolve_catalog_address(name_or_address: str) -> str:
    """Expand a named catalog shortcut; anything else is returned unchanged."""
    return CATALOG_ADDRESSES.get(name_or_address.strip().lower(), name_or_address)
