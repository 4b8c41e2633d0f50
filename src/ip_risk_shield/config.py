"""Engine configuration management.

This module provides the engine's settings model and a small configuration
manager that merges settings from several sources, validates them, and lets
operators adjust them at runtime without a redeploy.

Features:
- Typed, validated settings (pydantic) with the engine's default policy
- File sources in JSON, YAML and TOML formats
- Environment variable source (``IPRISK_`` prefix)
- Priority-based merging of sources
- Runtime updates with change notification callbacks
- Polling file watcher for live reload
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import toml
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ip_risk_shield.exceptions import ConfigurationError
from ip_risk_shield.models import validate_ip

logger = logging.getLogger(__name__)


class EngineSettings(BaseModel):
    """Tunable policy of the IP risk engine. Durations are in seconds."""

    # Decision thresholds (0-100)
    auto_block_threshold: float = Field(85.0, ge=0, le=100)
    review_threshold: float = Field(70.0, ge=0, le=100)
    monitor_threshold: float = Field(30.0, ge=0, le=100)

    # Rule-based scorer ceilings and penalties
    max_requests_per_minute: int = Field(60, ge=1)
    max_failed_attempts_per_hour: int = Field(10, ge=0)
    blocked_countries: Set[str] = Field(default_factory=lambda: {"CN", "RU", "KP"})
    blocked_country_penalty: float = 40.0
    tor_penalty: float = 30.0
    proxy_penalty: float = 20.0
    request_rate_penalty: float = 25.0
    failed_attempts_penalty: float = 35.0
    rule_based_confidence: float = Field(75.0, ge=0, le=100)

    # Contextual modifiers
    first_visit_multiplier: float = Field(0.8, ge=0)
    first_visit_max_base: float = 50.0
    valid_session_multiplier: float = Field(0.9, ge=0)
    valid_session_max_base: float = 70.0
    suspicious_user_agent_penalty: float = 10.0
    suspicious_user_agent_patterns: List[str] = Field(
        default_factory=lambda: ["sqlmap", "nikto", "nmap", "masscan", "zgrab", "python-requests", "curl/"]
    )

    # Enforcement
    temporary_block_duration: float = Field(24 * 60 * 60, gt=0)
    permanent_block_threshold: int = Field(3, ge=1)
    block_persist_attempts: int = Field(3, ge=1)
    block_persist_retry_delay: float = Field(0.1, ge=0)
    whitelist: Set[str] = Field(default_factory=lambda: {"127.0.0.1", "::1"})

    # Caching
    decision_cache_ttl: float = Field(3600.0, gt=0)
    negative_cache_ttl: float = Field(3600.0, gt=0)
    reputation_cache_ttl: float = Field(4 * 60 * 60, gt=0)

    # Activity tracking
    activity_record_cap: int = Field(100, ge=1)
    analysis_batch_size: int = Field(20, ge=1)
    failed_attempts_trigger: int = Field(5, ge=1)
    user_agent_trigger: int = Field(5, ge=1)
    activity_idle_ttl: float = Field(24 * 60 * 60, gt=0)

    # External calls
    provider_timeout: float = Field(3.0, gt=0)
    scorer_timeout: float = Field(5.0, gt=0)
    scorer_failure_threshold: int = Field(3, ge=1)
    scorer_recovery_timeout: float = Field(300.0, ge=0)

    # Maintenance intervals
    expiry_sweep_interval: float = Field(60 * 60, gt=0)
    feed_refresh_interval: float = Field(6 * 60 * 60, gt=0)
    report_interval: float = Field(24 * 60 * 60, gt=0)
    activity_reap_interval: float = Field(60 * 60, gt=0)

    history_limit: int = Field(1000, ge=1)

    model_config = {"validate_assignment": True}

    @field_validator("blocked_countries", mode="before")
    @classmethod
    def _normalize_countries(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return {str(code).strip().upper() for code in value if str(code).strip()}

    @field_validator("whitelist", mode="before")
    @classmethod
    def _normalize_whitelist(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return {validate_ip(str(ip)) for ip in value if str(ip).strip()}

    @field_validator("suspicious_user_agent_patterns", mode="before")
    @classmethod
    def _split_patterns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "EngineSettings":
        if not self.monitor_threshold <= self.review_threshold <= self.auto_block_threshold:
            raise ValueError(
                "thresholds must satisfy monitor_threshold <= review_threshold <= auto_block_threshold"
            )
        return self


class ConfigFormat(str, Enum):
    """Configuration file format enumeration."""
    JSON = "json"
    YAML = "yaml"
    TOML = "toml"


@dataclass
class ConfigChangeEvent:
    """A single setting that changed during a reload or runtime update."""
    key: str
    old_value: Any
    new_value: Any
    timestamp: datetime


class ConfigLoader(ABC):
    """Abstract base class for configuration sources."""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def load(self) -> Dict[str, Any]:
        """Load raw settings from the source."""
        pass

    def supports_watch(self) -> bool:
        return False


class DictConfigLoader(ConfigLoader):
    """In-memory configuration source."""

    def __init__(self, values: Dict[str, Any]):
        super().__init__()
        self.values = dict(values)

    async def load(self) -> Dict[str, Any]:
        return deepcopy(self.values)


class FileConfigLoader(ConfigLoader):
    """File-based configuration source (JSON, YAML or TOML)."""

    def __init__(self, path: str, format: Optional[ConfigFormat] = None, encoding: str = "utf-8"):
        super().__init__()
        self.file_path = Path(path)
        self.format = format or self._detect_format()
        self.encoding = encoding
        self._last_modified: Optional[float] = None

    def _detect_format(self) -> ConfigFormat:
        """Detect file format from extension."""
        suffix = self.file_path.suffix.lower()
        format_map = {
            ".json": ConfigFormat.JSON,
            ".yaml": ConfigFormat.YAML,
            ".yml": ConfigFormat.YAML,
            ".toml": ConfigFormat.TOML,
        }
        return format_map.get(suffix, ConfigFormat.YAML)

    async def load(self) -> Dict[str, Any]:
        """Load configuration from file."""
        if not self.file_path.exists():
            self.logger.warning(f"Configuration file not found: {self.file_path}")
            return {}

        content = self.file_path.read_text(encoding=self.encoding)
        self._last_modified = self.file_path.stat().st_mtime

        if self.format == ConfigFormat.JSON:
            data = json.loads(content)
        elif self.format == ConfigFormat.YAML:
            data = yaml.safe_load(content) or {}
        else:
            data = toml.loads(content)

        # Allow the settings to live under an "ip_risk" section
        if isinstance(data, dict) and isinstance(data.get("ip_risk"), dict):
            data = data["ip_risk"]
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {self.file_path} must contain a mapping")
        return data

    def supports_watch(self) -> bool:
        return True

    def has_changed(self) -> bool:
        """Check whether the file was modified since the last load."""
        if not self.file_path.exists():
            return False
        modified = self.file_path.stat().st_mtime
        return self._last_modified is None or modified > self._last_modified


class EnvironmentConfigLoader(ConfigLoader):
    """Environment variables configuration source."""

    def __init__(self, prefix: str = "IPRISK_"):
        super().__init__()
        self.prefix = prefix

    async def load(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config = {}
        for key, value in os.environ.items():
            if not key.upper().startswith(self.prefix.upper()):
                continue
            config_key = key[len(self.prefix):].lower()
            if config_key in EngineSettings.model_fields:
                config[config_key] = self._convert_type(value)
        return config

    def _convert_type(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "false"):
            return value.lower() == "true"
        if value.isdigit():
            return int(value)
        try:
            return float(value)
        except ValueError:
            pass
        if "," in value:
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


class SettingsManager:
    """Holds the live EngineSettings and applies validated updates to them."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self._settings = settings or EngineSettings()
        self._loaders: List[Tuple[ConfigLoader, int]] = []
        self._change_callbacks: List[Callable[[List[ConfigChangeEvent]], None]] = []
        self._watch_task: Optional[asyncio.Task] = None
        self._lock = RLock()

    @classmethod
    def from_values(cls, **values: Any) -> "SettingsManager":
        """Create a manager from keyword overrides of the defaults."""
        try:
            return cls(EngineSettings(**values))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid engine settings: {e}") from e

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def add_source(self, loader: ConfigLoader, priority: int = 100) -> "SettingsManager":
        """Add configuration source; higher priority wins on conflicts."""
        self._loaders.append((loader, priority))
        self._loaders.sort(key=lambda x: x[1], reverse=True)
        return self

    def add_file(self, path: str, priority: int = 100) -> "SettingsManager":
        return self.add_source(FileConfigLoader(path), priority)

    def add_environment(self, prefix: str = "IPRISK_", priority: int = 200) -> "SettingsManager":
        return self.add_source(EnvironmentConfigLoader(prefix), priority)

    def on_change(self, callback: Callable[[List[ConfigChangeEvent]], None]) -> "SettingsManager":
        """Register change callback."""
        self._change_callbacks.append(callback)
        return self

    async def load(self) -> EngineSettings:
        """Load and merge every source on top of the defaults."""
        merged: Dict[str, Any] = {}
        for loader, _ in reversed(self._loaders):  # Lowest priority first
            try:
                merged.update(await loader.load())
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Failed to load settings from {loader.__class__.__name__}: {e}")
        self._apply(merged, base=EngineSettings().model_dump())
        return self._settings

    def update(self, **changes: Any) -> EngineSettings:
        """Apply runtime changes on top of the current settings."""
        unknown = set(changes) - set(EngineSettings.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {sorted(unknown)}")
        self._apply(changes, base=self._settings.model_dump())
        return self._settings

    def _apply(self, changes: Dict[str, Any], base: Dict[str, Any]) -> None:
        with self._lock:
            try:
                new_settings = EngineSettings.model_validate({**base, **changes})
            except ValidationError as e:
                raise ConfigurationError(f"Invalid engine settings: {e}") from e

            old_values = self._settings.model_dump()
            self._settings = new_settings

        events = self._detect_changes(old_values, new_settings.model_dump())
        if events:
            logger.info(f"Engine settings changed: {', '.join(event.key for event in events)}")
            self._notify(events)

    def _detect_changes(self, old: Dict[str, Any], new: Dict[str, Any]) -> List[ConfigChangeEvent]:
        now = datetime.now(timezone.utc)
        return [
            ConfigChangeEvent(key=key, old_value=old.get(key), new_value=value, timestamp=now)
            for key, value in new.items()
            if old.get(key) != value
        ]

    def _notify(self, events: List[ConfigChangeEvent]) -> None:
        for callback in self._change_callbacks:
            try:
                callback(events)
            except Exception as e:
                logger.error(f"Error in settings change callback: {e}")

    async def start_watching(self, interval: float = 5.0) -> None:
        """Poll watchable sources and reload when they change."""
        if self._watch_task and not self._watch_task.done():
            return
        self._watch_task = asyncio.create_task(self._watch(interval))

    async def _watch(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                changed = any(
                    isinstance(loader, FileConfigLoader) and loader.has_changed()
                    for loader, _ in self._loaders
                )
                if changed:
                    await self.load()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Failed to reload settings: {e}")

    async def stop_watching(self) -> None:
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None


def create_settings_manager(
    config_file: Optional[str] = None,
    env_prefix: Optional[str] = "IPRISK_",
    **overrides: Any,
) -> SettingsManager:
    """Create a settings manager from defaults, overrides, a file and the environment.

    Call ``await manager.load()`` to pull the file and environment sources;
    overrides given here are the lowest-priority source.
    """
    manager = SettingsManager.from_values(**overrides)
    if overrides:
        manager.add_source(DictConfigLoader(overrides), priority=0)
    if config_file:
        manager.add_file(config_file, priority=100)
    if env_prefix:
        manager.add_environment(env_prefix, priority=200)
    return manager
