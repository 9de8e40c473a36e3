"""
fastbeam Configuration
======================

Loads fastbeam.yaml with environment variable overrides. Command-line
flags are applied on top by the CLI.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import os
import yaml
import logging
from pathlib import Path
from dataclasses import dataclass, field, fields, asdict
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "fastbeam.yaml"


class ConfigError(Exception):
    """Invalid configuration file or value."""


# =============================================================================
# Configuration Data Classes
# =============================================================================

@dataclass
class EngineConfig:
    """Typesetting engine configuration."""
    command: str = "pdflatex"
    args: List[str] = field(default_factory=lambda: [
        "-interaction=nonstopmode", "-halt-on-error", "-shell-escape",
    ])
    passes: int = 1
    timeout: float = 300.0
    precompile_preamble: bool = False  # mylatexformat format dump


@dataclass
class MergeConfig:
    """Merge tool configuration."""
    command: str = "pdfunite"
    args: List[str] = field(default_factory=list)
    timeout: float = 120.0


@dataclass
class CacheConfig:
    """Artifact cache configuration."""
    dir: Optional[str] = None  # None = ~/.fastbeam/cache
    prune_after_build: bool = False
    prune_older_than_days: float = 30.0


@dataclass
class SchedulerConfig:
    """Compile job scheduling."""
    max_workers: Optional[int] = None  # None = CPU count
    retry_attempts: int = 2  # total attempts for transient failures
    retry_base_delay: float = 0.5


@dataclass
class WatchConfig:
    """Watch loop configuration."""
    debounce_ms: int = 300
    use_polling: bool = False
    ignore_patterns: List[str] = field(default_factory=lambda: [
        "*.aux", "*.log", "*.nav", "*.out", "*.snm", "*.toc", "*.vrb",
        "*.synctex.gz", "*.fls", "*.fdb_latexmk", "*~", ".*.swp",
        "*/.git/*", "*/.fastbeam/*",
    ])


@dataclass
class OutputConfig:
    """Output document configuration."""
    mode: str = "merge"  # merge | first-changed
    path: Optional[str] = None  # None = <source>.pdf


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    build_log: bool = True  # builds.jsonl / builds.log under the cache dir


@dataclass
class FastbeamConfig:
    """Root configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Optional[str] = None  # file the configuration was loaded from

    def cache_dir(self) -> Optional[Path]:
        return Path(self.cache.dir).expanduser() if self.cache.dir else None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("source", None)
        return data


_SECTIONS = {
    "engine": EngineConfig,
    "merge": MergeConfig,
    "cache": CacheConfig,
    "scheduler": SchedulerConfig,
    "watch": WatchConfig,
    "output": OutputConfig,
    "logging": LoggingConfig,
}


# =============================================================================
# Configuration Loader
# =============================================================================

def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find fastbeam.yaml by searching upward from start_path.

    Search order:
    1. start_path / fastbeam.yaml
    2. start_path / .fastbeam / fastbeam.yaml
    3. Parent directories (recursive)
    4. ~/.config/fastbeam/fastbeam.yaml

    Args:
        start_path: Starting directory (defaults to cwd)

    Returns:
        Path to config file or None if not found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = Path(start_path).resolve()
    for _ in range(10):  # Max 10 levels up
        for candidate in (current / CONFIG_FILENAME, current / ".fastbeam" / CONFIG_FILENAME):
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    user_config = Path.home() / ".config" / "fastbeam" / CONFIG_FILENAME
    if user_config.is_file():
        return user_config

    return None


def load_config(config_path: Optional[Path] = None, start_path: Optional[Path] = None) -> FastbeamConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Environment variables override config file values:
    - FASTBEAM_ENGINE -> engine.command
    - FASTBEAM_MERGE_TOOL -> merge.command
    - FASTBEAM_WORKERS -> scheduler.max_workers
    - FASTBEAM_CACHE_DIR -> cache.dir
    - FASTBEAM_LOG_LEVEL -> logging.level
    - FASTBEAM_DEBOUNCE_MS -> watch.debounce_ms

    Args:
        config_path: Path to config file (auto-detected if None)
        start_path: Directory the upward search starts from

    Returns:
        FastbeamConfig instance

    Raises:
        ConfigError: Unreadable file or invalid value
    """
    config = FastbeamConfig()

    if config_path is None:
        config_path = find_config_file(start_path)
    elif not Path(config_path).is_file():
        raise ConfigError(f"config file not found: {config_path}")

    if config_path is not None:
        logger.debug(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read {config_path}: {e}") from e
        config = parse_config_dict(data)
        config.source = str(config_path)
    else:
        logger.debug("No config file found, using defaults")

    config = _apply_env_overrides(config)
    validate_config(config)
    return config


def parse_config_dict(data: Dict[str, Any]) -> FastbeamConfig:
    """Parse configuration dictionary into FastbeamConfig."""
    if not isinstance(data, dict):
        raise ConfigError("configuration root must be a mapping")

    config = FastbeamConfig()
    for key, value in data.items():
        section_cls = _SECTIONS.get(key)
        if section_cls is None:
            logger.warning(f"Unknown config section '{key}' ignored")
            continue
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ConfigError(f"section '{key}' must be a mapping")

        known = {f.name for f in fields(section_cls)}
        for name in value:
            if name not in known:
                logger.warning(f"Unknown config key '{key}.{name}' ignored")
        setattr(config, key, section_cls(**{k: v for k, v in value.items() if k in known}))

    return config


def _apply_env_overrides(config: FastbeamConfig) -> FastbeamConfig:
    """Apply environment variable overrides to config."""

    if os.environ.get("FASTBEAM_ENGINE"):
        config.engine.command = os.environ["FASTBEAM_ENGINE"]

    if os.environ.get("FASTBEAM_MERGE_TOOL"):
        config.merge.command = os.environ["FASTBEAM_MERGE_TOOL"]

    if os.environ.get("FASTBEAM_WORKERS"):
        config.scheduler.max_workers = _env_int("FASTBEAM_WORKERS")

    if os.environ.get("FASTBEAM_CACHE_DIR"):
        config.cache.dir = os.environ["FASTBEAM_CACHE_DIR"]

    if os.environ.get("FASTBEAM_LOG_LEVEL"):
        config.logging.level = os.environ["FASTBEAM_LOG_LEVEL"]

    if os.environ.get("FASTBEAM_DEBOUNCE_MS"):
        config.watch.debounce_ms = _env_int("FASTBEAM_DEBOUNCE_MS")

    return config


def _env_int(name: str) -> int:
    try:
        return int(os.environ[name])
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {os.environ[name]!r}") from e


def validate_config(config: FastbeamConfig) -> None:
    """
    Validate configuration values.

    Raises:
        ConfigError: On the first invalid value
    """
    if not isinstance(config.engine.command, str) or not config.engine.command.strip():
        raise ConfigError("engine.command must be a non-empty string")
    if not isinstance(config.engine.args, list):
        raise ConfigError("engine.args must be a list")
    if not isinstance(config.engine.passes, int) or config.engine.passes < 1:
        raise ConfigError(f"engine.passes must be >= 1, got {config.engine.passes!r}")

    if not isinstance(config.merge.command, str) or not config.merge.command.strip():
        raise ConfigError("merge.command must be a non-empty string")

    workers = config.scheduler.max_workers
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        raise ConfigError(f"scheduler.max_workers must be >= 1, got {workers!r}")
    if not isinstance(config.scheduler.retry_attempts, int) or config.scheduler.retry_attempts < 1:
        raise ConfigError("scheduler.retry_attempts must be >= 1")

    if not isinstance(config.watch.debounce_ms, int) or config.watch.debounce_ms < 0:
        raise ConfigError(f"watch.debounce_ms must be >= 0, got {config.watch.debounce_ms!r}")

    valid_modes = ("merge", "first-changed")
    if config.output.mode not in valid_modes:
        raise ConfigError(f"output.mode must be one of {valid_modes}, got {config.output.mode!r}")

    level = str(config.logging.level).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"logging.level is not a log level: {config.logging.level!r}")
    config.logging.level = level


def save_config(config: FastbeamConfig, path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: FastbeamConfig instance
        path: Output path
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Configuration saved to: {path}")
