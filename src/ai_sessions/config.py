"""Configuration loading and management."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_CACHE_DIR = Path("~/.cache/ai-sessions")


@dataclass(frozen=True)
class SourceConfig:
    enabled: bool = True
    path: Path | None = None  # Overrides the source's default data directory


@dataclass(frozen=True)
class SearchConfig:
    cache_path: Path = field(default_factory=lambda: Path.home() / ".cache" / "ai-sessions" / "search.db")
    k1: float = 1.2
    b: float = 0.75
    snippet_length: int = 160
    busy_timeout_ms: int = 5000
    evict_after_missing: int = 3


@dataclass(frozen=True)
class LoggingConfig:
    dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "ai-sessions" / "logs")
    level: int = logging.INFO


@dataclass(frozen=True)
class Config:
    home: Path = field(default_factory=Path.home)
    sources: dict[str, SourceConfig] = field(default_factory=dict)
    search: SearchConfig = field(default_factory=SearchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def source(self, name: str) -> SourceConfig:
        """Get the configuration for a source, falling back to defaults."""
        return self.sources.get(name, SourceConfig())

    def source_root(self, name: str, *default: str) -> Path:
        """Resolve a source's data directory.

        Args:
            name: Source name
            *default: Path components under the home directory used when
                the source has no explicit path configured

        Returns:
            Configured path, or home joined with the default components
        """
        configured = self.source(name).path
        if configured is not None:
            return configured
        return self.home.joinpath(*default)


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def parse_log_level(value: str | int) -> int:
    """Convert a level name like "debug" to its logging constant."""
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {value}")
    return level


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "ai-sessions" / "config.yaml",
            Path("/etc/ai-sessions/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    home_value = data.get("home")
    home = expand_path(expand_env_var(home_value)) if home_value else Path.home()

    # Parse per-source config
    sources = {}
    for name, src_data in (data.get("sources") or {}).items():
        src_data = src_data or {}
        path_value = src_data.get("path")
        sources[name] = SourceConfig(
            enabled=src_data.get("enabled", True),
            path=expand_path(path_value) if path_value else None,
        )

    # Parse search config
    search_data = data.get("search") or {}
    search = SearchConfig(
        cache_path=expand_path(search_data.get("cache_path", str(DEFAULT_CACHE_DIR / "search.db"))),
        k1=float(search_data.get("k1", 1.2)),
        b=float(search_data.get("b", 0.75)),
        snippet_length=int(search_data.get("snippet_length", 160)),
        busy_timeout_ms=int(search_data.get("busy_timeout_ms", 5000)),
        evict_after_missing=int(search_data.get("evict_after_missing", 3)),
    )

    # Parse logging config
    logging_data = data.get("logging") or {}
    logging_config = LoggingConfig(
        dir=expand_path(logging_data.get("dir", str(DEFAULT_CACHE_DIR / "logs"))),
        level=parse_log_level(logging_data.get("level", "INFO")),
    )

    return Config(
        home=home,
        sources=sources,
        search=search,
        logging=logging_config,
    )
