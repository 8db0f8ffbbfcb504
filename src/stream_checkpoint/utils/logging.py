from __future__ import annotations
import logging
import logging.config
import os
from pathlib import Path
from typing import Optional
import yaml

LOG_CONFIG_ENV = "STREAM_CHECKPOINT_LOG_CONFIG"
LOG_LEVEL_ENV = "STREAM_CHECKPOINT_LOG_LEVEL"


def setup_logging(config_path: Optional[str] = "configs/logging.yaml", level: Optional[str] = None) -> None:
    """
    Configure logging from a YAML dictConfig file.

    STREAM_CHECKPOINT_LOG_CONFIG overrides `config_path`. Without a readable file,
    falls back to basicConfig at `level` (or STREAM_CHECKPOINT_LOG_LEVEL, default INFO).
    """
    path = Path(os.getenv(LOG_CONFIG_ENV) or config_path or "")
    if not path.is_file():
        fallback = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
        logging.basicConfig(level=fallback, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        return

    with path.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    logging.config.dictConfig(cfg)
    if level:
        logging.getLogger("stream_checkpoint").setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    """Get a logger in the stream_checkpoint hierarchy."""
    if not name.startswith("stream_checkpoint"):
        name = f"stream_checkpoint.{name}"
    return logging.getLogger(name)
