"""Configuration management for the session query engine."""

import copy
import logging
import os
import yaml
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional
from pathlib import Path

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "engine.yaml"

DEFAULTS: Dict[str, Any] = {
    "store": {
        "root": "~/.claude/projects",
        "suffix": ".jsonl",
        "details_cache_size": 200,
    },
    "query": {
        "timeout_seconds": 30.0,
        "validation_timeout_seconds": 2.0,
        "cache_size": 100,
        "max_logs_per_query": 100,
        "default_limit": 1000,
        "max_limit": 10000,
        "workers": 4,
    },
    "process": {
        "command": ["claude"],
        "ceiling": 10,
        "timeout_seconds": 120.0,
        "kill_grace_seconds": 5.0,
        "default_workdir": None,
    },
    "stream": {
        "rate_limit": 100,
        "window_seconds": 1.0,
        "timeout_seconds": 300.0,
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "security_file": None,
    },
}


@dataclass
class StoreSettings:
    root: Path
    suffix: str = ".jsonl"
    details_cache_size: int = 200


@dataclass
class QuerySettings:
    timeout_seconds: float = 30.0
    validation_timeout_seconds: float = 2.0
    cache_size: int = 100
    max_logs_per_query: int = 100
    default_limit: int = 1000
    max_limit: int = 10000
    workers: int = 4


@dataclass
class ProcessSettings:
    command: List[str] = field(default_factory=lambda: ["claude"])
    ceiling: int = 10
    timeout_seconds: float = 120.0
    kill_grace_seconds: float = 5.0
    default_workdir: Optional[Path] = None


@dataclass
class StreamSettings:
    rate_limit: int = 100
    window_seconds: float = 1.0
    timeout_seconds: Optional[float] = 300.0


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: Optional[str] = None
    security_file: Optional[str] = None


@dataclass
class EngineSettings:
    """Fully resolved engine configuration."""
    store: StoreSettings
    query: QuerySettings
    process: ProcessSettings
    stream: StreamSettings
    logging: LoggingSettings


class ConfigManager:
    """Manages engine configuration from a YAML file plus environment overrides."""

    def __init__(self, config_dir: str = "config", environ: Optional[Dict[str, str]] = None):
        self.config_dir = Path(config_dir)
        self.environ = os.environ if environ is None else environ
        self._raw: Optional[Dict[str, Any]] = None
        self._settings: Optional[EngineSettings] = None

    @property
    def raw(self) -> Dict[str, Any]:
        """Load and cache the YAML document. Raises FileNotFoundError if absent."""
        if self._raw is None:
            self._raw = self._load_yaml(CONFIG_FILENAME)
        return self._raw

    @property
    def settings(self) -> EngineSettings:
        """Resolved settings: defaults, then YAML (if present), then environment."""
        if self._settings is None:
            try:
                document = self.raw
            except FileNotFoundError:
                logger.debug(f"No {CONFIG_FILENAME} in {self.config_dir}, using defaults")
                document = {}
            self._settings = self._build(document)
        return self._settings

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        """Load YAML configuration file."""
        file_path = self.config_dir / filename

        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {filename}: {e}")

    def _build(self, document: Dict[str, Any]) -> EngineSettings:
        if not isinstance(document, dict):
            raise ConfigurationError(f"{CONFIG_FILENAME} must contain a mapping at top level")

        sections = {name: _merge(document, name) for name in DEFAULTS}

        self._apply_environment(sections)

        try:
            store = StoreSettings(
                root=Path(str(sections["store"]["root"])).expanduser(),
                suffix=str(sections["store"]["suffix"]),
                details_cache_size=int(sections["store"]["details_cache_size"]),
            )
            query = QuerySettings(**{k: _coerce(v, QuerySettings, k) for k, v in sections["query"].items()})
            command = sections["process"]["command"]
            if isinstance(command, str):
                command = command.split()
            workdir = sections["process"].get("default_workdir")
            process = ProcessSettings(
                command=[str(part) for part in command],
                ceiling=int(sections["process"]["ceiling"]),
                timeout_seconds=float(sections["process"]["timeout_seconds"]),
                kill_grace_seconds=float(sections["process"]["kill_grace_seconds"]),
                default_workdir=Path(workdir).expanduser() if workdir else None,
            )
            stream_timeout = sections["stream"].get("timeout_seconds")
            stream = StreamSettings(
                rate_limit=int(sections["stream"]["rate_limit"]),
                window_seconds=float(sections["stream"]["window_seconds"]),
                timeout_seconds=float(stream_timeout) if stream_timeout else None,
            )
            logging_settings = LoggingSettings(
                level=str(sections["logging"]["level"]).upper(),
                file=sections["logging"].get("file"),
                security_file=sections["logging"].get("security_file"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}")

        settings = EngineSettings(store, query, process, stream, logging_settings)
        _check(settings)
        return settings

    def _apply_environment(self, sections: Dict[str, Dict[str, Any]]) -> None:
        root = self.environ.get("SESSIONQ_ROOT") or self.environ.get("CLAUDE_PROJECTS_PATH")
        if root:
            sections["store"]["root"] = root

        level = self.environ.get("SESSIONQ_LOG_LEVEL") or self.environ.get("LOG_LEVEL")
        if level:
            sections["logging"]["level"] = level

        command = self.environ.get("SESSIONQ_CLI_COMMAND")
        if command:
            sections["process"]["command"] = command.split()


def _merge(document: Dict[str, Any], name: str) -> Dict[str, Any]:
    merged = copy.deepcopy(DEFAULTS[name])
    section = document.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    merged.update(section)
    return merged


def _coerce(value: Any, cls: type, name: str) -> Any:
    if name not in cls.__dataclass_fields__:
        raise ConfigurationError(f"Unknown setting '{name}'")
    default = cls.__dataclass_fields__[name].default
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _check(settings: EngineSettings) -> None:
    if not settings.store.suffix.startswith("."):
        raise ConfigurationError("store.suffix must start with '.'")
    if settings.query.timeout_seconds <= 0:
        raise ConfigurationError("query.timeout_seconds must be positive")
    if settings.query.workers < 1:
        raise ConfigurationError("query.workers must be at least 1")
    if settings.query.cache_size < 1:
        raise ConfigurationError("query.cache_size must be at least 1")
    if settings.query.default_limit > settings.query.max_limit:
        raise ConfigurationError("query.default_limit cannot exceed query.max_limit")
    if not settings.process.command:
        raise ConfigurationError("process.command must name an executable")
    if settings.process.ceiling < 1:
        raise ConfigurationError("process.ceiling must be at least 1")
    if settings.process.timeout_seconds <= 0:
        raise ConfigurationError("process.timeout_seconds must be positive")
    if settings.stream.rate_limit < 1 or settings.stream.window_seconds <= 0:
        raise ConfigurationError("stream.rate_limit and stream.window_seconds must be positive")
    if settings.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigurationError(f"Unknown logging level: {settings.logging.level}")
