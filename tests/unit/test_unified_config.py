"""Tests for unified_config.py and the hub server settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from racelog_sync import unified_config
from racelog_sync.core.context import MergeTieBreak, NodeRole
from racelog_sync.core.identity import is_node_id
from racelog_sync.unified_config import (
    DedupSettings,
    HubSettings,
    NodeSettings,
    SyncSettings,
    UnifiedConfig,
    close_shared_storage,
    get_racelog_dir,
    get_shared_storage,
)
from racelog_sync.utils import config as server_config


@pytest.fixture()
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point RACELOG_SYNC_DIR at a temporary directory."""
    path = tmp_path / ".racelog-sync"
    monkeypatch.setenv("RACELOG_SYNC_DIR", str(path))
    unified_config.reset_config()
    yield path
    unified_config.reset_config()


# ── Data directory ───────────────────────────────────────────────


class TestDataDir:
    def test_env_override(self, data_dir: Path) -> None:
        assert get_racelog_dir() == data_dir

    def test_default_is_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("RACELOG_SYNC_DIR", raising=False)
        assert get_racelog_dir() == Path.home() / ".racelog-sync"


# ── Load / save ──────────────────────────────────────────────────


class TestLoadSave:
    def test_load_creates_default_file(self, data_dir: Path) -> None:
        config = UnifiedConfig.load()

        assert config.config_path == data_dir / "config.toml"
        assert config.config_path.exists()
        assert config.db_path == data_dir / "node.db"
        assert config.node.role == NodeRole.EDGE
        assert config.dedup.tie_break == MergeTieBreak.LOWEST_ORIGIN_NODE

    def test_round_trip(self, data_dir: Path) -> None:
        config = UnifiedConfig(
            data_dir=data_dir,
            node=NodeSettings(role=NodeRole.HUB, name='Finish "area"'),
            hub=HubSettings(url="http://10.0.0.2:8000", api_key="s3cret", timeout=12.5),
            sync=SyncSettings(
                interval_seconds=30.0,
                batch_size=25,
                scopes=("race:7c9e6679-7425-40de-944b-e07fc1f90ae7",),
            ),
            dedup=DedupSettings(window_seconds=90, tie_break=MergeTieBreak.EARLIEST_CREATED),
        )
        config.save()

        loaded = UnifiedConfig.load(config.config_path)

        assert loaded == config

    def test_invalid_values_are_clamped(self, data_dir: Path) -> None:
        data_dir.mkdir(parents=True)
        (data_dir / "config.toml").write_text(
            "[sync]\nbatch_size = 0\n\n[dedup]\nwindow_seconds = -5\n", encoding="utf-8"
        )

        config = UnifiedConfig.load()

        assert config.sync.batch_size == 1
        assert config.dedup.window_seconds == 1

    def test_unknown_tie_break_rejected(self, data_dir: Path) -> None:
        data_dir.mkdir(parents=True)
        (data_dir / "config.toml").write_text(
            '[dedup]\ntie_break = "coin_flip"\n', encoding="utf-8"
        )

        with pytest.raises(ValueError):
            UnifiedConfig.load()

    def test_save_leaves_no_temp_files(self, data_dir: Path) -> None:
        UnifiedConfig(data_dir=data_dir).save()

        assert [p.name for p in data_dir.iterdir()] == ["config.toml"]


# ── Derived values ───────────────────────────────────────────────


class TestDerived:
    def test_node_id_is_persistent(self, data_dir: Path) -> None:
        config = UnifiedConfig(data_dir=data_dir)

        first = config.node_id

        assert is_node_id(first)
        assert UnifiedConfig(data_dir=data_dir).node_id == first

    def test_with_updates(self, data_dir: Path) -> None:
        config = UnifiedConfig(data_dir=data_dir)

        updated = config.with_updates(node=NodeSettings(role=NodeRole.HUB, name="finish"))

        assert updated.node.role == NodeRole.HUB
        assert config.node.role == NodeRole.EDGE
        assert updated.hub == config.hub

    def test_build_context(self, data_dir: Path) -> None:
        config = UnifiedConfig(
            data_dir=data_dir,
            node=NodeSettings(name="checkpoint 3"),
            dedup=DedupSettings(window_seconds=45, tie_break=MergeTieBreak.EARLIEST_CREATED),
        )

        context = config.build_context()

        assert context.node_id == config.node_id
        assert context.node_name == "checkpoint 3"
        assert context.role == NodeRole.EDGE
        assert context.window_seconds == 45
        assert context.tie_break == MergeTieBreak.EARLIEST_CREATED
        assert config.build_context(NodeRole.HUB).role == NodeRole.HUB

    def test_get_config_is_cached(self, data_dir: Path) -> None:
        first = unified_config.get_config()

        assert unified_config.get_config() is first
        assert unified_config.get_config(reload=True) is not first


# ── Shared storage ───────────────────────────────────────────────


class TestSharedStorage:
    async def test_same_path_same_instance(self, tmp_path: Path) -> None:
        try:
            first = await get_shared_storage(tmp_path / "node.db")
            second = await get_shared_storage(tmp_path / "node.db")
            assert first is second
        finally:
            await close_shared_storage()

    async def test_closed_storage_is_reopened(self, tmp_path: Path) -> None:
        try:
            first = await get_shared_storage(tmp_path / "node.db")
            await close_shared_storage()
            second = await get_shared_storage(tmp_path / "node.db")
            assert second is not first
        finally:
            await close_shared_storage()


# ── Hub server settings ──────────────────────────────────────────


class TestServerConfig:
    @pytest.fixture(autouse=True)
    def _reset(self):
        server_config.reset_config()
        yield
        server_config.reset_config()

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in ("HOST", "PORT", "DEBUG", "DB_PATH", "CORS_ORIGINS", "API_KEY"):
            monkeypatch.delenv(f"RACELOG_SYNC_{key}", raising=False)

        config = server_config.get_config()

        assert config.host == "127.0.0.1"
        assert config.port == 8000
        assert config.debug is False
        assert config.db_path is None
        assert config.api_key is None

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RACELOG_SYNC_HOST", "0.0.0.0")
        monkeypatch.setenv("RACELOG_SYNC_PORT", "9100")
        monkeypatch.setenv("RACELOG_SYNC_DEBUG", "yes")
        monkeypatch.setenv("RACELOG_SYNC_DB_PATH", "/srv/hub.db")
        monkeypatch.setenv("RACELOG_SYNC_CORS_ORIGINS", "http://a.local, http://b.local")
        monkeypatch.setenv("RACELOG_SYNC_API_KEY", "token")

        config = server_config.Config.from_env()

        assert config.host == "0.0.0.0"
        assert config.port == 9100
        assert config.debug is True
        assert config.db_path == "/srv/hub.db"
        assert config.cors_origins == ["http://a.local", "http://b.local"]
        assert config.api_key == "token"

    def test_bad_port_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RACELOG_SYNC_PORT", "eighty")

        assert server_config.Config.from_env().port == 8000

    def test_out_of_range_port_is_logged(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setenv("RACELOG_SYNC_PORT", "70000")

        with caplog.at_level("WARNING", logger="racelog_sync.utils.config"):
            config = server_config.Config.from_env()

        assert config.port == 8000
        assert "RACELOG_SYNC_PORT" in caplog.text

    def test_blank_values_use_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RACELOG_SYNC_API_KEY", "  ")
        monkeypatch.setenv("RACELOG_SYNC_CORS_ORIGINS", "")

        config = server_config.Config.from_env()

        assert config.api_key is None
        assert config.cors_origins == list(server_config.DEFAULT_CORS_ORIGINS)

    def test_singleton_reset(self) -> None:
        first = server_config.get_config()
        server_config.reset_config()

        assert server_config.get_config() is not first
