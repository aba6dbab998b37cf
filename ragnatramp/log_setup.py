from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import EngineConfig


class HumanFormatter(logging.Formatter):
    def format(self, record):
        timestamp = self.formatTime(record, self.datefmt)
        message = (
            f"[ragnatramp] {timestamp} {record.levelname.lower()} "
            f"{record.name} {record.getMessage()}"
        )
        if hasattr(record, "machine"):
            message = f"{message} | machine={record.machine}"
        return message


def setup_logger(name: str, logfile: str | None = None, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if logger.handlers:
        return logger

    formatter = HumanFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    if logfile:
        log_path = Path(logfile)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(str(log_path), maxBytes=5 * 1024 * 1024, backupCount=5)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    logger.propagate = False
    return logger


def logger_from_config(config: EngineConfig, name: str = "ragnatramp") -> logging.Logger:
    return setup_logger(name, config.log_file, config.verbose)
