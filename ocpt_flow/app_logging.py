from __future__ import annotations

import logging
import pathlib
import sys
from typing import Optional

LOG_NAME = "ocpt_flow"
LOG_FILE_PATH = pathlib.Path.cwd() / "ocpt_flow.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(log_file: Optional[pathlib.Path] = LOG_FILE_PATH, *, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOG_NAME)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)
        formatter = logging.Formatter(LOG_FORMAT)
        if log_file is not None:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        if verbose or log_file is None:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
        logger.propagate = False
        logger.info("Logging initialised. Writing to %s", log_file if log_file is not None else "stderr")
    return logger


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(LOG_NAME).getChild(component)
