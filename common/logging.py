# common/logging.py
from __future__ import annotations
import logging, os
from logging.handlers import RotatingFileHandler
from typing import List, Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO

def _file_logging_enabled() -> bool:
    return os.getenv("LOG_FILE", "1").lower() not in ("0", "false", "no", "off")

def _build_handlers(name: str, log_dir: str) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if _file_logging_enabled():
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=os.path.join(log_dir, f"{name}.log"),
            maxBytes=5_000_000,
            backupCount=5,
            encoding="utf-8",
        ))
    return handlers

def get_logger(name: str, log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Component logger writing to stdout and, unless LOG_FILE=0, to a rotating
    <log_dir>/<name>.log (5MB x 5). log_dir defaults to $LOG_DIR or "logs",
    level to $LOG_LEVEL. Idempotent per name.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_level = _resolve_level(level)
    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)
    for handler in _build_handlers(name, log_dir or os.getenv("LOG_DIR", "logs")):
        handler.setFormatter(fmt)
        handler.setLevel(log_level)
        logger.addHandler(handler)

    logger.setLevel(log_level)
    logger.propagate = False
    return logger
