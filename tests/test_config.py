"""Tests for forumrag.core.config: Configuration management."""

import logging

import pytest

from forumrag.core.config import (
    BackendConfig,
    ForumRagConfig,
    IndexingConfig,
    ServerConfig,
    StoreConfig,
    clamp,
)
from forumrag.core.types import IndexingSettings


class TestForumRagConfigDefaults:
    def test_from_env_defaults(self, monkeypatch):
        for name in ("FORUMRAG_BATCH_SIZE", "FORUMRAG_PORT", "FORUMRAG_BACKEND_MODE", "FORUMRAG_AUTH_TOKEN"):
            monkeypatch.delenv(name, raising=False)
        config = ForumRagConfig.from_env()
        assert config.indexing.chunk_size == 512
        assert config.indexing.overlap_percent == 20
        assert config.indexing.batch_size == 5
        assert config.indexing.lease_ttl_seconds == 300.0
        assert config.indexing.fallback_delay_seconds == 60.0
        assert config.indexing.backend_timeout_seconds == 25.0
        assert config.backend.mode == "http"
        assert config.backend.status_cache_seconds == 300.0
        assert config.server.port == 42070
        assert config.server.host == "127.0.0.1"
        assert config.server.auth_token is None

    def test_ensure_directories(self, tmp_path):
        config = ForumRagConfig(
            data_dir=str(tmp_path / "forumrag_data"),
            store=StoreConfig(path=str(tmp_path / "forumrag_data" / "db" / "indexing.db")),
        )
        config.ensure_directories()
        assert (tmp_path / "forumrag_data" / "db").exists()


class TestFromEnv:
    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FORUMRAG_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("FORUMRAG_BATCH_SIZE", "10")
        monkeypatch.setenv("FORUMRAG_LEASE_TTL", "120")
        monkeypatch.setenv("FORUMRAG_BACKEND_URL", "https://rag.example.com")
        monkeypatch.setenv("FORUMRAG_TENANT_ID", "tenant-1")
        monkeypatch.setenv("FORUMRAG_BACKEND_MODE", "Memory")
        monkeypatch.setenv("FORUMRAG_AUTH_TOKEN", "tok")
        config = ForumRagConfig.from_env()
        assert config.data_dir == str(tmp_path)
        assert config.store.path.startswith(str(tmp_path))
        assert config.indexing.batch_size == 10
        assert config.indexing.lease_ttl_seconds == 120.0
        assert config.backend.base_url == "https://rag.example.com"
        assert config.backend.tenant_id == "tenant-1"
        assert config.backend.mode == "memory"
        assert config.server.auth_token == "tok"

    def test_invalid_values_fall_back_to_defaults(self, monkeypatch, caplog):
        monkeypatch.setenv("FORUMRAG_BATCH_SIZE", "lots")
        monkeypatch.setenv("FORUMRAG_FALLBACK_DELAY", "-5")
        with caplog.at_level(logging.WARNING, logger="ForumRag.Config"):
            config = ForumRagConfig.from_env()
        assert config.indexing.batch_size == 5
        assert config.indexing.fallback_delay_seconds == 60.0
        assert "FORUMRAG_BATCH_SIZE" in caplog.text

    def test_out_of_range_batch_size_is_clamped(self, monkeypatch):
        monkeypatch.setenv("FORUMRAG_BATCH_SIZE", "500")
        assert ForumRagConfig.from_env().indexing.batch_size == 50


class TestFromYaml:
    def test_loads_nested_sections(self, tmp_path):
        path = tmp_path / "forumrag.yaml"
        path.write_text(
            "indexing:\n"
            "  batch_size: 8\n"
            "  chunk_size: 2048\n"
            "backend:\n"
            "  base_url: https://rag.example.com\n"
            "server:\n"
            "  port: 9000\n"
        )
        config = ForumRagConfig.from_yaml(str(path))
        assert config.indexing.batch_size == 8
        assert config.indexing.chunk_size == 1024
        assert config.backend.base_url == "https://rag.example.com"
        assert config.server.port == 9000

    def test_missing_file_uses_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FORUMRAG_BATCH_SIZE", "7")
        config = ForumRagConfig.from_yaml(str(tmp_path / "absent.yaml"))
        assert config.indexing.batch_size == 7


class TestIndexingConfig:
    def test_timeout_must_stay_below_lease_ttl(self):
        config = IndexingConfig(lease_ttl_seconds=60, backend_timeout_seconds=90).normalized()
        assert config.backend_timeout_seconds == 30.0

    def test_valid_timeout_untouched(self):
        config = IndexingConfig(backend_timeout_seconds=10).normalized()
        assert config.backend_timeout_seconds == 10

    def test_normalized_clamps_run_defaults(self):
        config = IndexingConfig(chunk_size=50, overlap_percent=0, batch_size=0).normalized()
        assert (config.chunk_size, config.overlap_percent, config.batch_size) == (100, 5, 1)


class TestClamp:
    @pytest.mark.parametrize(
        "value,expected",
        [(99, 100), (100, 100), (512, 512), (1024, 1024), (5000, 1024)],
    )
    def test_bounds(self, value, expected):
        assert clamp("chunk_size", value, (100, 1024)) == expected

    def test_clamping_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="ForumRag.Config"):
            clamp("batch_size", 99, (1, 50))
        assert "batch_size=99" in caplog.text

    def test_bounded_settings(self):
        settings = IndexingSettings.bounded(chunk_size=1, overlap_percent=99, batch_size=7, total_items=3)
        assert (settings.chunk_size, settings.overlap_percent, settings.batch_size) == (100, 50, 7)
        assert settings.total_items == 3
        assert len(settings.run_id) == 32


class TestSectionDefaults:
    def test_backend_defaults(self):
        cfg = BackendConfig()
        assert cfg.api_key is None
        assert cfg.base_url == "http://localhost:8080"

    def test_server_defaults(self):
        cfg = ServerConfig()
        assert cfg.log_level == "info"
