import sys

import logging


def configure_logging() -> None:
    """Configure process-wide logging.

    Respects DEBUG env var (true/1/yes/on) to enable verbose logs.
    In non-debug mode, only info and above are shown and noisy third-party
    loggers are limited to warnings.
    """
    import os
    debug_env = os.getenv("DEBUG", "false").strip().lower()
    debug_enabled = debug_env in ("1", "true", "yes", "on")

    # Clear existing handlers
    root = logging.getLogger()
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.DEBUG)

    root.setLevel(logging.DEBUG if debug_enabled else logging.INFO)
    root.addHandler(stream_handler)

    # Quiet noisy third-party loggers in non-debug mode
    if not debug_enabled:
        for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "watchfiles"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
