import faulthandler
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def _build_file_handler(log_path: str) -> RotatingFileHandler:
    formatter = logging.Formatter(_FORMAT, "%H:%M:%S")
    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    file_handler.name = "relay_file"
    return file_handler


def _build_stream_handler(level: int) -> logging.StreamHandler:
    formatter = logging.Formatter(_FORMAT, "%H:%M:%S")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    stream_handler.name = "relay_stream"
    return stream_handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    logger.handlers = []
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False


def configure_logging(logs_dir: Optional[str] = None) -> str:
    """Send every logger to logs/server_<timestamp>.log and stderr.

    The console level comes from RELAY_LOG_LEVEL (default INFO); the file
    always gets DEBUG. Returns the path of the log file for this process.
    """
    logs_dir = logs_dir or os.path.join(os.getcwd(), "logs")
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_path = os.path.join(logs_dir, f"server_{timestamp}.log")

    file_handler = _build_file_handler(log_path)
    console_level = logging.getLevelName(os.environ.get("RELAY_LOG_LEVEL", "INFO").upper())
    if not isinstance(console_level, int):
        console_level = logging.INFO
    stream_handler = _build_stream_handler(console_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    _replace_handlers(root_logger, [file_handler, stream_handler])

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, [file_handler, stream_handler])

    # chatty at DEBUG and not useful in the relay log
    for name in ("faster_whisper", "aiohttp.access", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info("Logging initialized: %s", log_path)
    return log_path


_crash_log = None


def enable_crash_logging(logs_dir: Optional[str] = None) -> str:
    """Append faulthandler tracebacks (all threads) to logs/crash.log.

    Safe to call more than once; only the first call opens the file.
    """
    global _crash_log
    logs_dir = logs_dir or os.path.join(os.getcwd(), "logs")
    crash_path = os.path.join(logs_dir, "crash.log")
    if _crash_log is None:
        os.makedirs(logs_dir, exist_ok=True)
        _crash_log = open(crash_path, "a", encoding="utf-8")
        _crash_log.write(f"--- pid {os.getpid()} started {datetime.now().isoformat(timespec='seconds')}\n")
        _crash_log.flush()
        faulthandler.enable(file=_crash_log, all_threads=True)
    return crash_path
