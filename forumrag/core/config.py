"""
ForumRAG Configuration
----------------------
Centralized configuration for the indexing coordinator, its store, the
backend adapters and the HTTP server. Loads from environment variables and
YAML config files.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from forumrag.platform import get_data_dir

logger = logging.getLogger("ForumRag.Config")

DEFAULT_DATA_DIR = str(get_data_dir())

CHUNK_SIZE_BOUNDS = (100, 1024)
OVERLAP_PERCENT_BOUNDS = (5, 50)
BATCH_SIZE_BOUNDS = (1, 50)


def clamp(name: str, value: int, bounds) -> int:
    """Clamp ``value`` into ``bounds``; out-of-range input is corrected, not rejected."""
    low, high = bounds
    clamped = max(low, min(high, int(value)))
    if clamped != value:
        logger.warning("%s=%r is outside [%d, %d]; clamping to %d", name, value, low, high, clamped)
    return clamped


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected integer)", name, raw)
        return default


def _env_float(name: str, default: float, *, min_value: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected float)", name, raw)
        return default
    if value < min_value:
        logger.warning(
            "Ignoring %s=%r because it is below minimum %.3f",
            name,
            raw,
            min_value,
        )
        return default
    return value


class IndexingConfig(BaseModel):
    """Run defaults and timing for the indexing coordinator."""
    chunk_size: int = 512
    overlap_percent: int = 20
    batch_size: int = 5
    lease_ttl_seconds: float = 300.0
    fallback_delay_seconds: float = 60.0
    backend_timeout_seconds: float = 25.0

    def normalized(self) -> "IndexingConfig":
        """Return a copy with bounded values clamped and the backend timeout kept under the lease TTL."""
        timeout = self.backend_timeout_seconds
        if timeout >= self.lease_ttl_seconds:
            timeout = self.lease_ttl_seconds / 2
            logger.warning(
                "backend_timeout_seconds=%.1f must stay below lease_ttl_seconds=%.1f; clamping to %.1f",
                self.backend_timeout_seconds,
                self.lease_ttl_seconds,
                timeout,
            )
        return self.model_copy(
            update={
                "chunk_size": clamp("chunk_size", self.chunk_size, CHUNK_SIZE_BOUNDS),
                "overlap_percent": clamp("overlap_percent", self.overlap_percent, OVERLAP_PERCENT_BOUNDS),
                "batch_size": clamp("batch_size", self.batch_size, BATCH_SIZE_BOUNDS),
                "backend_timeout_seconds": timeout,
            }
        )


class StoreConfig(BaseModel):
    """SQLite queue store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "indexing.db")


class BackendConfig(BaseModel):
    """Tenant RAG API used for embedding and credit accounting."""
    mode: str = "http"  # "http" or "memory" (local dry runs)
    base_url: str = "http://localhost:8080"
    api_key: Optional[str] = None
    tenant_id: Optional[str] = None
    status_cache_seconds: float = 300.0


class ForumConfig(BaseModel):
    """Forum REST API the topic provider reads from."""
    base_url: str = "http://localhost/wp-json/forum/v1"
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0


class ServerConfig(BaseModel):
    """FastAPI server configuration."""
    host: str = "127.0.0.1"
    port: int = 42070
    log_level: str = "info"
    auth_token: Optional[str] = None


class ForumRagConfig(BaseModel):
    """Root configuration for the indexing service."""
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    forum: ForumConfig = Field(default_factory=ForumConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> "ForumRagConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - FORUMRAG_DATA_DIR: Base data directory
        - FORUMRAG_CHUNK_SIZE / FORUMRAG_OVERLAP_PERCENT / FORUMRAG_BATCH_SIZE: Run defaults
        - FORUMRAG_LEASE_TTL: Lease lifetime in seconds
        - FORUMRAG_FALLBACK_DELAY: Seconds before a fallback activation fires
        - FORUMRAG_BACKEND_TIMEOUT: Bound on one indexing call
        - FORUMRAG_BACKEND_MODE: "http" (tenant RAG API) or "memory" (local dry run)
        - FORUMRAG_BACKEND_URL / FORUMRAG_API_KEY / FORUMRAG_TENANT_ID: Tenant RAG API
        - FORUMRAG_FORUM_URL / FORUMRAG_FORUM_API_KEY: Forum REST API
        - FORUMRAG_HOST / FORUMRAG_PORT / FORUMRAG_LOG_LEVEL: Server binding
        - FORUMRAG_AUTH_TOKEN: Bearer token required by the API (unset: no auth)
        """
        data_dir = os.environ.get("FORUMRAG_DATA_DIR", DEFAULT_DATA_DIR)
        indexing = IndexingConfig(
            chunk_size=_env_int("FORUMRAG_CHUNK_SIZE", 512),
            overlap_percent=_env_int("FORUMRAG_OVERLAP_PERCENT", 20),
            batch_size=_env_int("FORUMRAG_BATCH_SIZE", 5),
            lease_ttl_seconds=_env_float("FORUMRAG_LEASE_TTL", 300.0, min_value=1.0),
            fallback_delay_seconds=_env_float("FORUMRAG_FALLBACK_DELAY", 60.0, min_value=0.0),
            backend_timeout_seconds=_env_float("FORUMRAG_BACKEND_TIMEOUT", 25.0, min_value=0.1),
        ).normalized()

        return cls(
            data_dir=data_dir,
            indexing=indexing,
            store=StoreConfig(path=os.path.join(data_dir, "indexing.db")),
            backend=BackendConfig(
                mode=os.environ.get("FORUMRAG_BACKEND_MODE", "http").strip().lower(),
                base_url=os.environ.get("FORUMRAG_BACKEND_URL", "http://localhost:8080"),
                api_key=os.environ.get("FORUMRAG_API_KEY"),
                tenant_id=os.environ.get("FORUMRAG_TENANT_ID"),
                status_cache_seconds=_env_float("FORUMRAG_STATUS_CACHE", 300.0, min_value=0.0),
            ),
            forum=ForumConfig(
                base_url=os.environ.get("FORUMRAG_FORUM_URL", "http://localhost/wp-json/forum/v1"),
                api_key=os.environ.get("FORUMRAG_FORUM_API_KEY"),
                timeout_seconds=_env_float("FORUMRAG_FORUM_TIMEOUT", 10.0, min_value=0.1),
            ),
            server=ServerConfig(
                host=os.environ.get("FORUMRAG_HOST", "127.0.0.1"),
                port=_env_int("FORUMRAG_PORT", 42070),
                log_level=os.environ.get("FORUMRAG_LOG_LEVEL", "info"),
                auth_token=os.environ.get("FORUMRAG_AUTH_TOKEN") or None,
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "ForumRagConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s; using environment", path)
            return cls.from_env()
        config = cls(**data)
        config.indexing = config.indexing.normalized()
        return config

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.store.path).parent.mkdir(parents=True, exist_ok=True)
