"""Centralized logging configuration for agentmix — file logs go to ./tmp/."""

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(log_level: str = "INFO", log_file: str | None = None) -> None:
    """Configure the root logger with a console handler and an optional file handler.

    Safe to call more than once: handlers are only added when missing, but the
    level is always updated.

    Args:
        log_level: Standard Python logging level name.
        log_file: If provided, logs are also written to ./tmp/<log_file>.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)

    console = next(
        (h for h in root.handlers
         if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)),
        None,
    )
    if console is None:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        root.addHandler(console)
    console.setLevel(level)

    if log_file:
        tmp_dir = Path("./tmp")
        tmp_dir.mkdir(parents=True, exist_ok=True)
        log_path = str((tmp_dir / log_file).resolve())

        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == log_path for h in root.handlers):
            fh = logging.FileHandler(log_path)
            fh.setLevel(level)
            fh.setFormatter(fmt)
            root.addHandler(fh)

    # SDK transports are chatty at INFO.
    for noisy in ("httpx", "httpcore", "anthropic", "openai", "google_genai"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
