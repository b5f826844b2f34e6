# Logging setup for the edge agent
# One rotating file under logs/, stderr while running in the foreground, and an
# ERROR hook that feeds the heartbeat errorCount

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional, Union

DEFAULT_LOG_PATH = Path(__file__).resolve().parent.parent / "logs" / "edge_agent.log"
ROTATE_BYTES = 5 * 1024 * 1024
ROTATE_KEEP = 5
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

ErrorHook = Callable[[str, str], None]

_error_hook: Optional[ErrorHook] = None


def set_error_alert_callback(callback: Optional[ErrorHook]):
    """Route ERROR and CRITICAL records to callback(message, level); None unhooks."""
    global _error_hook
    _error_hook = callback


class ErrorCountHandler(logging.Handler):
    def emit(self, record: logging.LogRecord):
        if _error_hook is None:
            return
        try:
            _error_hook(self.format(record), record.levelname)
        except Exception:
            self.handleError(record)


def parse_level(level: Union[int, str]) -> int:
    """'debug', 'WARNING' or a number; anything unknown is INFO"""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(log_path: Optional[Union[str, Path]] = None,
                  max_bytes: int = ROTATE_BYTES,
                  backup_count: int = ROTATE_KEEP,
                  console: bool = True,
                  level: Union[int, str] = logging.INFO) -> None:
    """Replace the root handlers. Safe to call again, e.g. from tests."""
    path = Path(log_path or DEFAULT_LOG_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count,
                                    encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    error_counter = ErrorCountHandler(level=logging.ERROR)
    handlers.append(error_counter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(parse_level(level))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
