import atexit
import logging
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
from queue import Queue
from pathlib import Path
from config.settings import LOG_LEVEL, LOG_FILE

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# One queue + listener per log file; the listener thread owns the file handle
# so cycle threads never block on disk or rotation.
_LISTENERS: dict[str, QueueListener] = {}
_QUEUES: dict[str, Queue] = {}


def _queue_handler_for(log_file: str, max_bytes: int, backup_count: int) -> QueueHandler:
    key = str(Path(log_file))
    if key in _LISTENERS:
        return QueueHandler(_QUEUES[key])

    Path(key).parent.mkdir(parents=True, exist_ok=True)

    q: Queue = Queue(-1)
    file_handler = RotatingFileHandler(
        key,
        mode="a",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
        delay=True,
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    listener = QueueListener(q, file_handler, respect_handler_level=True)
    listener.start()
    _QUEUES[key] = q
    _LISTENERS[key] = listener
    atexit.register(listener.stop)

    return QueueHandler(q)


def setup_logger(
    name: str,
    log_file: str = LOG_FILE,
    level=LOG_LEVEL,
    max_bytes: int = 1024 * 1024 * 5,
    backup_count: int = 6,
):
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # Module-level loggers are created at import time; never stack handlers.
    if not logger.handlers:
        handler = _queue_handler_for(log_file, max_bytes, backup_count)
        handler.setLevel(level)
        logger.addHandler(handler)

    return logger

