"""Structured logging system with JSON output and rich terminal formatting."""

import logging
import threading
from typing import Any, Dict, Optional, Union, Protocol
from pathlib import Path

from .log_formatters import StructuredFormatter, PicotestRichHandler, _log_context

ROOT_LOGGER_NAME = "picotest"


class Logger(Protocol):
    """Protocol for logger instances to enable dependency injection."""

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log error message."""

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log exception with traceback."""


class LogManager:
    """Central logging configuration and management.

    All picotest loggers live below the ``picotest`` logger, which does not
    propagate to the root logger. Handlers are attached to that logger only,
    so configuring picotest never disturbs the host application's logging.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._configured = False
        self._console_handler: Optional[logging.Handler] = None
        self._file_handlers: list[logging.Handler] = []
        self._root = logging.getLogger(ROOT_LOGGER_NAME)
        self._root.propagate = False
        self._root.setLevel(logging.DEBUG)
        self._root.addHandler(logging.NullHandler())

    @property
    def is_configured(self) -> bool:
        return self._configured

    def configure(
        self,
        level: Union[int, str] = logging.INFO,
        log_file: Optional[Path] = None,
        enable_json: bool = True,
        enable_console: bool = True,
        console_level: Optional[Union[int, str]] = None,
    ) -> None:
        """Configure logging system. Subsequent calls are ignored until shutdown."""
        with self._lock:
            if self._configured:
                return

            if enable_console:
                self._console_handler = PicotestRichHandler(
                    show_time=True, show_path=False, markup=False
                )
                self._console_handler.setLevel(console_level or level)
                self._root.addHandler(self._console_handler)

            if enable_json and log_file:
                self.add_file_handler(Path(log_file), level)

            self._configured = True

    def add_file_handler(
        self, log_file: Path, level: Union[int, str] = logging.DEBUG
    ) -> logging.Handler:
        with self._lock:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, encoding="utf-8")
            handler.setFormatter(StructuredFormatter(include_context=True))
            handler.setLevel(level)
            self._root.addHandler(handler)
            self._file_handlers.append(handler)
            return handler

    def get_logger(self, name: str) -> logging.Logger:
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
            return logging.getLogger(name)
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

    def shutdown(self) -> None:
        with self._lock:
            handlers = list(self._file_handlers)
            if self._console_handler is not None:
                handlers.append(self._console_handler)
            for handler in handlers:
                self._root.removeHandler(handler)
                try:
                    handler.close()
                except (OSError, RuntimeError):
                    pass  # Ignore handler close errors
            self._file_handlers.clear()
            self._console_handler = None
            self._configured = False


# Global log manager instance
_log_manager = LogManager()


def configure_logging(**kwargs: Any) -> None:
    """Configure the global logging system."""
    _log_manager.configure(**kwargs)


def add_file_logging(log_file: Path, level: Union[int, str] = logging.DEBUG) -> None:
    """Add JSON file logging to an already-configured logging system."""
    _log_manager.add_file_handler(Path(log_file), level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return _log_manager.get_logger(name)


def log_process_event(
    logger: Logger, event: str, pid: Optional[int] = None, **kwargs: Any
) -> None:
    """Log a process-related event."""
    extra: Dict[str, Any] = {"event_type": "process", "process_event": event}
    if pid is not None:
        extra["pid"] = pid
    extra.update(kwargs)
    logger.info("Process %s %s", pid, event, extra=extra)


def log_instance_event(
    logger: Logger, event: str, instance: Any = None, **kwargs: Any
) -> None:
    """Log an instance-related event.

    ``instance`` may be an InstanceRecord (anything with ``name``, ``index``
    and ``pid`` attributes) or a plain string name.
    """
    extra: Dict[str, Any] = {"event_type": "instance", "instance_event": event}
    if instance is None:
        display = None
    elif isinstance(instance, str):
        extra["instance"] = instance
        display = instance
    else:
        extra["instance"] = instance.name
        extra["instance_index"] = instance.index
        if instance.pid is not None:
            extra["pid"] = instance.pid
        display = str(instance)
    extra.update(kwargs)
    logger.info("Instance %s %s", display, event, extra=extra)


def log_cluster_event(
    logger: Logger, event: str, cluster_id: Any = None, **kwargs: Any
) -> None:
    """Log a cluster-wide event."""
    extra: Dict[str, Any] = {"event_type": "cluster", "cluster_event": event}
    if cluster_id is not None:
        extra["cluster_id"] = str(cluster_id)
    extra.update(kwargs)
    logger.info("Cluster %s %s", cluster_id, event, extra=extra)


def get_log_context() -> Dict[str, Any]:
    return _log_context.get_context()


def clear_log_context() -> None:
    _log_context.clear_context()


def log_context(**kwargs: Any) -> Any:
    """Context manager for temporary logging context."""
    return _log_context.context(**kwargs)
