from __future__ import annotations

import logging
import time
from collections import deque
from pathlib import Path

from rich.logging import RichHandler

from .config import ModkeeperConfig
from .errors import ModkeeperError

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class LogError(ModkeeperError):
    pass


def configure_logging(cfg: ModkeeperConfig, *, verbose: bool = False) -> None:
    """Send modkeeper logs to the terminal (rich) and to cfg.log_file."""

    root = logging.getLogger("modkeeper")
    root.setLevel(logging.DEBUG if verbose else cfg.log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(show_path=False, rich_tracebacks=True)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    try:
        cfg.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_file, encoding="utf-8")
    except OSError as exc:
        root.warning("Cannot open log file %s: %s", cfg.log_file, exc)
        return
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


def tail_logs(cfg: ModkeeperConfig, lines: int = 50, follow: bool = False) -> None:
    log_path: Path = cfg.log_file
    if not log_path.exists():
        raise LogError(f"Log file not found: {log_path}")

    with log_path.open("r", encoding="utf-8", errors="ignore") as handle:
        buffer = deque(handle, maxlen=lines)
        for entry in buffer:
            print(entry, end="")

        if not follow:
            return

        while True:
            position = handle.tell()
            line = handle.readline()
            if not line:
                time.sleep(0.5)
                handle.seek(position)
                continue
            print(line, end="")
