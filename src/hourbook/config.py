"""Configuration loading for hourbook."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("hourbook.config")

IMPORT_MODES = ("header", "positional")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class ImportConfig:
    """Defaults for CSV imports."""
    default_mode: str = "header"  # header or positional
    encoding: str = "utf-8-sig"   # tolerates the BOM spreadsheet exports add
    delimiter: str = ","


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/hourbook.db"))
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/hourbook/config.toml",
            Path("/etc/hourbook/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    config = Config()

    if config_path is not None and config_path.exists():
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        logger.debug("Loaded config from %s", config_path)

        if "db_path" in data:
            config.db_path = Path(data["db_path"])

        if "logging" in data:
            log = data["logging"]
            config.logging = LoggingConfig(
                level=log.get("level", "INFO"),
                output=log.get("output", "console"),
                file=log.get("file", ""),
                rotate=log.get("rotate", True),
                max_size_mb=log.get("max_size_mb", 10),
                backup_count=log.get("backup_count", 5),
            )

        if "import" in data:
            imp = data["import"]
            mode = imp.get("default_mode", "header")
            if mode not in IMPORT_MODES:
                logger.warning("Unknown import mode %r in config, using 'header'", mode)
                mode = "header"
            config.imports = ImportConfig(
                default_mode=mode,
                encoding=imp.get("encoding", "utf-8-sig"),
                delimiter=imp.get("delimiter", ","),
            )

    # Environment override for the database location
    env_db_path = os.environ.get("HOURBOOK_DB_PATH")
    if env_db_path:
        config.db_path = Path(env_db_path)

    return config
