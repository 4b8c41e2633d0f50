"""Tests for engine settings and the settings manager."""

import asyncio
import json
import os
from unittest.mock import patch

import pytest

from ip_risk_shield.config import (
    ConfigFormat,
    DictConfigLoader,
    EngineSettings,
    EnvironmentConfigLoader,
    FileConfigLoader,
    SettingsManager,
    create_settings_manager,
)
from ip_risk_shield.exceptions import ConfigurationError


class TestEngineSettings:
    """Test defaults and validation."""

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.auto_block_threshold == 85.0
        assert settings.review_threshold == 70.0
        assert settings.monitor_threshold == 30.0
        assert settings.max_requests_per_minute == 60
        assert settings.max_failed_attempts_per_hour == 10
        assert settings.blocked_countries == {"CN", "RU", "KP"}
        assert settings.temporary_block_duration == 24 * 60 * 60
        assert settings.permanent_block_threshold == 3
        assert settings.decision_cache_ttl == 3600
        assert settings.reputation_cache_ttl == 4 * 60 * 60
        assert settings.whitelist == {"127.0.0.1", "::1"}

    def test_country_codes_normalized(self):
        settings = EngineSettings(blocked_countries="cn, ru ,")

        assert settings.blocked_countries == {"CN", "RU"}

    def test_whitelist_normalized(self):
        settings = EngineSettings(whitelist=["2001:DB8::1", "10.0.0.1"])

        assert settings.whitelist == {"2001:db8::1", "10.0.0.1"}

    def test_invalid_whitelist_entry(self):
        with pytest.raises(ConfigurationError):
            SettingsManager.from_values(whitelist=["not-an-ip"])

    def test_threshold_order_enforced(self):
        with pytest.raises(ConfigurationError):
            SettingsManager.from_values(review_threshold=90, auto_block_threshold=85)

    def test_out_of_range_threshold(self):
        with pytest.raises(ConfigurationError):
            SettingsManager.from_values(auto_block_threshold=150)


class TestConfigLoaders:
    """Test file and environment sources."""

    @pytest.mark.asyncio
    async def test_json_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"auto_block_threshold": 90, "blocked_countries": ["IR"]}))

        data = await FileConfigLoader(str(path)).load()

        assert data == {"auto_block_threshold": 90, "blocked_countries": ["IR"]}

    @pytest.mark.asyncio
    async def test_yaml_file_with_section(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("ip_risk:\n  review_threshold: 65\n  tor_penalty: 45\n")

        loader = FileConfigLoader(str(path))
        data = await loader.load()

        assert loader.format == ConfigFormat.YAML
        assert data == {"review_threshold": 65, "tor_penalty": 45}

    @pytest.mark.asyncio
    async def test_toml_file(self, tmp_path):
        path = tmp_path / "settings.toml"
        path.write_text("monitor_threshold = 25\nhistory_limit = 500\n")

        data = await FileConfigLoader(str(path)).load()

        assert data == {"monitor_threshold": 25, "history_limit": 500}

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        data = await FileConfigLoader(str(tmp_path / "missing.json")).load()

        assert data == {}

    @pytest.mark.asyncio
    async def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2, 3]")

        with pytest.raises(ConfigurationError):
            await FileConfigLoader(str(path)).load()

    @pytest.mark.asyncio
    async def test_environment_loader(self):
        env = {
            "IPRISK_AUTO_BLOCK_THRESHOLD": "90",
            "IPRISK_TOR_PENALTY": "42.5",
            "IPRISK_BLOCKED_COUNTRIES": "IR,KP",
            "IPRISK_UNKNOWN_SETTING": "1",
        }
        with patch.dict(os.environ, env):
            data = await EnvironmentConfigLoader("IPRISK_").load()

        assert data["auto_block_threshold"] == 90
        assert data["tor_penalty"] == 42.5
        assert data["blocked_countries"] == ["IR", "KP"]
        assert "unknown_setting" not in data


class TestSettingsManager:
    """Test merging, runtime updates and change callbacks."""

    @pytest.mark.asyncio
    async def test_priority_merge(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"review_threshold": 60, "tor_penalty": 50}))

        manager = SettingsManager()
        manager.add_source(DictConfigLoader({"review_threshold": 55, "proxy_penalty": 15}), priority=0)
        manager.add_file(str(path), priority=100)
        with patch.dict(os.environ, {"IPRISK_TOR_PENALTY": "60"}):
            manager.add_environment("IPRISK_", priority=200)
            settings = await manager.load()

        assert settings.review_threshold == 60
        assert settings.tor_penalty == 60
        assert settings.proxy_penalty == 15

    @pytest.mark.asyncio
    async def test_invalid_source_keeps_previous_settings(self):
        manager = SettingsManager()
        manager.add_source(DictConfigLoader({"auto_block_threshold": "high"}))

        with pytest.raises(ConfigurationError):
            await manager.load()

        assert manager.settings.auto_block_threshold == 85.0

    def test_runtime_update_notifies(self):
        manager = SettingsManager()
        events = []
        manager.on_change(events.append)

        manager.update(auto_block_threshold=90)

        assert manager.settings.auto_block_threshold == 90
        assert len(events) == 1
        assert [(e.key, e.old_value, e.new_value) for e in events[0]] == [("auto_block_threshold", 85.0, 90)]

    def test_update_without_change_is_silent(self):
        manager = SettingsManager()
        events = []
        manager.on_change(events.append)

        manager.update(auto_block_threshold=85.0)

        assert events == []

    def test_unknown_setting_rejected(self):
        manager = SettingsManager()

        with pytest.raises(ConfigurationError):
            manager.update(not_a_setting=1)

    def test_invalid_update_rejected(self):
        manager = SettingsManager()

        with pytest.raises(ConfigurationError):
            manager.update(monitor_threshold=95)

        assert manager.settings.monitor_threshold == 30.0

    def test_failing_callback_does_not_block_update(self):
        manager = SettingsManager()

        def broken(events):
            raise RuntimeError("callback down")

        manager.on_change(broken)
        manager.update(tor_penalty=33)

        assert manager.settings.tor_penalty == 33

    @pytest.mark.asyncio
    async def test_watching_reloads_changed_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"tor_penalty": 40}))
        manager = SettingsManager().add_file(str(path))
        await manager.load()
        assert manager.settings.tor_penalty == 40

        await manager.start_watching(interval=0.01)
        path.write_text(json.dumps({"tor_penalty": 45}))
        modified = path.stat().st_mtime + 10
        os.utime(path, (modified, modified))
        await asyncio.sleep(0.1)
        await manager.stop_watching()

        assert manager.settings.tor_penalty == 45

    @pytest.mark.asyncio
    async def test_create_settings_manager(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("auto_block_threshold: 95\n")

        manager = create_settings_manager(str(path), env_prefix=None, review_threshold=75)
        assert manager.settings.review_threshold == 75

        settings = await manager.load()
        assert settings.auto_block_threshold == 95
        assert settings.review_threshold == 75
