# -*- coding: utf-8 -*-
from __future__ import annotations
import logging, logging.handlers
from pathlib import Path

LOG_FILE_NAME = "matrix_hub.log"


def setup_logging(settings, level: int = logging.INFO) -> Path:
    """Configure rotating file logging under MATRIX_DATA_ROOT/logs/matrix_hub.log"""
    root = Path(settings.MATRIX_DATA_ROOT).expanduser()
    log_dir = root / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILE_NAME

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(fmt)
    handler.setLevel(level)

    logger = logging.getLogger()  # root
    logger.setLevel(level)
    # avoid duplicate handlers
    if not _has_log_file(logger):
        logger.addHandler(handler)

    # also wire uvicorn loggers (if present)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        if not _has_log_file(lg):
            lg.addHandler(handler)

    return log_path


def _has_log_file(lg: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.handlers.RotatingFileHandler) and getattr(h, "baseFilename", "").endswith(LOG_FILE_NAME)
        for h in lg.handlers
    )
