"""
Configuration file loading and hot-reloading for QA Workbench.

Layers ``qa-workbench.config.json`` (or ``.yaml``) over the environment
based configuration and watches the file for changes.
"""

import json
import logging
import threading
import time
from dataclasses import fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import Config
from .exceptions import ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = ("qa-workbench.config.json", "qa-workbench.config.yaml", "qa-workbench.config.yml")


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration hot-reloading."""

    def __init__(self, config_manager: "ConfigManager"):
        self.config_manager = config_manager
        self.last_reload = 0.0
        self.reload_debounce = 1.0

    def _maybe_reload(self, path: str) -> None:
        if Path(path).name != self.config_manager.config_file_path.name:
            return

        current_time = time.time()
        if current_time - self.last_reload > self.reload_debounce:
            self.last_reload = current_time
            self.config_manager._trigger_reload()

    def on_modified(self, event):
        if event.is_directory:
            return
        self._maybe_reload(event.src_path)

    on_created = on_modified

    def on_moved(self, event):
        # Editors and atomic writers save by renaming a temp file over the original
        if event.is_directory:
            return
        self._maybe_reload(event.dest_path)


class ConfigManager:
    """
    Configuration access with file overrides, validation and hot-reloading.

    The file is optional. Keys that do not name a ``Config`` field are
    ignored with a warning.
    """

    def __init__(self, config_file_path: Optional[Path] = None):
        self.config_file_path = Path(config_file_path) if config_file_path else self._discover()

        self._config: Optional[Config] = None
        self._reload_callbacks: List[Callable[[Config], None]] = []
        self._observer: Optional[Observer] = None
        self._lock = threading.RLock()

    @staticmethod
    def _discover() -> Path:
        for name in CONFIG_FILE_NAMES:
            candidate = Path.cwd() / name
            if candidate.exists():
                return candidate
        return Path.cwd() / CONFIG_FILE_NAMES[0]

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        with self._lock:
            if self._config is None:
                self._config = self._load_config()
            return self._config

    def reload_config(self) -> Config:
        """Force reload configuration from files."""
        with self._lock:
            self._config = self._load_config()
            self._notify_reload_callbacks()
            return self._config

    def validate_config(self, config: Optional[Config] = None) -> List[str]:
        """Return every validation violation, empty when the config is valid."""
        if config is None:
            config = self.get_config()

        try:
            config.validate()
        except ValidationError as e:
            return list(e.violations) or [str(e)]
        return []

    def save_config(self, config: Config) -> None:
        """Write the file-overridable settings back to the config file."""
        config_dict: Dict[str, Any] = {}
        for f in fields(config):
            value = getattr(config, f.name)
            if f.name in ("cloud_username", "cloud_access_key"):
                continue
            config_dict[f.name] = str(value) if isinstance(value, Path) else value

        self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file_path, "w", encoding="utf-8") as f:
            if self.config_file_path.suffix in (".yaml", ".yml"):
                yaml.safe_dump(config_dict, f, sort_keys=True)
            else:
                json.dump(config_dict, f, indent=2, default=str)

    def start_hot_reload(self) -> None:
        """Start watching the config file's directory."""
        if self._observer is not None:
            return

        event_handler = ConfigFileHandler(self)
        self._observer = Observer()
        self._observer.schedule(
            event_handler, str(self.config_file_path.parent), recursive=False
        )
        self._observer.start()
        logger.debug(
            "Config hot reload started",
            extra={"metadata": {"path": str(self.config_file_path)}},
        )

    def stop_hot_reload(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def add_reload_callback(self, callback: Callable[[Config], None]) -> None:
        """Add callback to be called when configuration is reloaded."""
        self._reload_callbacks.append(callback)

    def remove_reload_callback(self, callback: Callable[[Config], None]) -> None:
        if callback in self._reload_callbacks:
            self._reload_callbacks.remove(callback)

    def _read_file(self) -> Dict[str, Any]:
        with open(self.config_file_path, "r", encoding="utf-8") as f:
            if self.config_file_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("configuration file must contain a mapping")
        return data

    def _load_config(self) -> Config:
        """Load configuration from the environment, then the config file."""
        config = Config.from_env()

        if not self.config_file_path.exists():
            return config

        try:
            file_config = self._read_file()
        except (json.JSONDecodeError, yaml.YAMLError, ValueError, OSError) as e:
            logger.warning(
                f"Could not load config file {self.config_file_path}: {e}",
                extra={"metadata": {"path": str(self.config_file_path)}},
            )
            return config

        known = {f.name for f in fields(Config)}
        overrides = {}
        for key, value in file_config.items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            if value is not None and (key.endswith("_dir") or key.endswith("_path")):
                value = Path(value)
            overrides[key] = value

        # Rebuild so derived paths follow an overridden app_data_dir
        base = {f.name: getattr(config, f.name) for f in fields(Config)}
        if "app_data_dir" in overrides:
            for derived in ("logs_dir", "auth_state_path", "credentials_path", "runtime_dir"):
                if derived not in overrides:
                    base[derived] = None
        base.update(overrides)
        return Config(**base)

    def _trigger_reload(self) -> None:
        """Reload from the file watcher thread."""
        try:
            self.reload_config()
            logger.info("Configuration reloaded")
        except Exception as e:
            logger.error(f"Error reloading configuration: {e}", exc_info=True)

    def _notify_reload_callbacks(self) -> None:
        for callback in list(self._reload_callbacks):
            try:
                callback(self._config)
            except Exception as e:
                logger.error(f"Error in reload callback: {e}", exc_info=True)


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> Config:
    """Get current configuration from global manager."""
    return get_config_manager().get_config()
