"""
Timing Configuration Sources
============================

- YAML time-scaling table with watchdog hot reload
- Static provider for tests and embedded runs
"""

import threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from hawkops.core import ConfigurationException
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.timing.application import ITimingConfigProvider
from hawkops.timing.domain import DEFAULT_TIME_SCALING, TimeScalingConfig

logger = get_logger(__name__)


class StaticTimingConfigProvider(ITimingConfigProvider):
    """Holds a fixed table."""

    def __init__(self, config: Optional[TimeScalingConfig] = None):
        self._config = config or DEFAULT_TIME_SCALING

    def get_config(self) -> TimeScalingConfig:
        return self._config


class TimingConfigFileHandler(FileSystemEventHandler):
    """
    Reloads the table when its file changes.

    Editors often save by writing a temp file and renaming it over the
    original, so created and moved events count as changes too.
    """

    def __init__(self, config_manager: "TimingConfigManager", config_path: Path):
        super().__init__()
        self.config_manager = config_manager
        self.config_path = config_path.resolve()

    def _touches_config(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", None)]
        return any(p and Path(p).resolve() == self.config_path for p in paths)

    def on_any_event(self, event):
        if event.event_type in ("modified", "created", "moved") and self._touches_config(event):
            logger.info("Timing config file changed", extra={"path": str(self.config_path), "event": event.event_type})
            self.config_manager.reload()


class TimingConfigManager(ITimingConfigProvider):
    """
    Thread-safe time-scaling table with hot-reload support.

    A reload that fails validation keeps the previous table in place, so a
    bad edit can never leave thresholds out of order.
    """

    def __init__(self):
        self._config: Optional[TimeScalingConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._version = 0

    @property
    def version(self) -> int:
        """Incremented on every successful load or reload."""
        return self._version

    def load(self, path: Path) -> TimeScalingConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: If the file exists but is invalid
        """
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (ValidationError, yaml.YAMLError) as e:
            raise ConfigurationException(f"Invalid timing config {self._path}: {e}")
        with self._lock:
            self._config = config
            self._version += 1
        return config

    def _load_from_file(self, path: Path) -> TimeScalingConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("Timing config file not found, using defaults", extra={"path": str(path)})
            return DEFAULT_TIME_SCALING

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return TimeScalingConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file; keep the old table on failure."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (ValidationError, yaml.YAMLError, OSError) as e:
            logger.error(
                "Failed to reload timing config, keeping previous table",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
            self._version += 1
        logger.info("Timing configuration reloaded", extra={"path": str(self._path), "version": self._version})
        return True

    def start_watching(self) -> None:
        """Start watching the configuration file for changes."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Timing config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                TimingConfigFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching timing config", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> TimeScalingConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Timing configuration not loaded")
            return self._config
