"""Root logger setup for the notifier process."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _file_handler(project_root: Path, cfg: dict[str, Any], level: int) -> logging.Handler:
    log_path = project_root / cfg.get("file", "logs/notifier.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    h = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    h.setLevel(level)
    return h


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Configure the root logger from the `logging` settings section.

    Logs to a rotating file unless `file` is empty; `log_to_console` adds
    stderr. Existing root handlers are replaced so repeated calls don't
    duplicate output.
    """
    cfg = settings.get("logging", {})
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)
    handlers: list[logging.Handler] = []
    if cfg.get("file"):
        handlers.append(_file_handler(project_root, cfg, level))
    if cfg.get("log_to_console", False):
        console = logging.StreamHandler()
        console.setLevel(level)
        handlers.append(console)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
