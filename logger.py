"""
Logging for the Biomarker Forest Plot Pipeline

Thin layer over the standard `logging` module:
- one-time configuration of handlers from CONFIG (console, rotating file)
- context key/values attached to every record
- per-operation timing for extraction and layout stages

Usage:
    from logger import get_logger

    logger = get_logger(__name__)
    logger.info("Extraction started")

    with logger.track_time("extract_biomarkers"):
        df = extract_rsp_biomarkers(...)
"""

import logging
import logging.handlers
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional

from config import CONFIG


class PerformanceLogger:
    """
    Record elapsed times of named operations.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.timings: Dict[str, list] = {}
        self._lock = threading.Lock()

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        """
        Measure the enclosed block and log its duration.

        Disabled (plain yield) when CONFIG['logging.log_performance'] is falsy.
        Timings are appended under a lock because extraction runs fits from
        worker threads.
        """
        if not CONFIG.get("logging.log_performance"):
            yield
            return

        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start_time

            with self._lock:
                self.timings.setdefault(operation, []).append(elapsed)

            log_method = getattr(self.logger, log_level.lower(), self.logger.debug)
            log_method(f"{operation} completed in {elapsed:.3f}s")

    def get_timings(self, operation: Optional[str] = None) -> Dict[str, list]:
        """
        Return recorded timings, all of them or only those of `operation`.
        """
        with self._lock:
            if operation:
                return {operation: list(self.timings.get(operation, []))}
            return {k: list(v) for k, v in self.timings.items()}

    def reset(self) -> None:
        with self._lock:
            self.timings.clear()


class ContextFilter(logging.Filter):
    """
    Add context information to log records.
    """

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True

    def set_context(self, **kwargs) -> None:
        self.context.update(kwargs)

    def clear_context(self) -> None:
        self.context.clear()


class LoggerFactory:
    """
    Factory for creating and caching loggers.
    """

    _loggers: ClassVar[Dict[str, "Logger"]] = {}
    _context_filter: Optional[ContextFilter] = None
    _perf_logger: Optional[PerformanceLogger] = None
    _configured = False
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def configure(cls) -> None:
        """
        Configure the root logger from CONFIG once.

        Reads level/format settings, installs the context filter and the
        enabled handlers. If logging is disabled in CONFIG, all logging is
        switched off. Configuration errors are reported on stderr and the
        factory is marked configured so it does not retry on every call.
        """
        if cls._configured:
            return

        try:
            if not CONFIG.get("logging.enabled"):
                logging.disable(logging.CRITICAL)
                cls._configured = True
                return

            log_level = CONFIG.get("logging.level", "INFO")
            formatter = logging.Formatter(
                CONFIG.get("logging.format"),
                datefmt=CONFIG.get("logging.date_format"),
            )

            root_logger = logging.getLogger()
            numeric_level = getattr(logging, str(log_level).upper(), None)
            if not isinstance(numeric_level, int):
                print(f"[WARNING] Invalid log level '{log_level}', defaulting to INFO", file=sys.stderr)
                numeric_level = logging.INFO
            root_logger.setLevel(numeric_level)

            cls._context_filter = ContextFilter()

            if CONFIG.get("logging.file_enabled"):
                cls._setup_file_logging(root_logger, formatter)

            if CONFIG.get("logging.console_enabled"):
                cls._setup_console_logging(root_logger, formatter)

            cls._configured = True

        except Exception as e:
            print(f"[WARNING] Logging configuration failed: {e}", file=sys.stderr)
            cls._configured = True

    @classmethod
    def _setup_file_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Attach a RotatingFileHandler under CONFIG['logging.log_dir'].
        """
        try:
            log_dir = Path(CONFIG.get("logging.log_dir", "logs"))
            log_dir.mkdir(exist_ok=True, parents=True)

            handler = logging.handlers.RotatingFileHandler(
                log_dir / CONFIG.get("logging.log_file", "biomarker_forest.log"),
                maxBytes=CONFIG.get("logging.max_log_size", 10485760),
                backupCount=CONFIG.get("logging.backup_count", 5),
            )
            handler.setFormatter(formatter)
            handler.addFilter(cls._context_filter)
            root_logger.addHandler(handler)

        except OSError as e:
            print(f"[WARNING] Failed to setup file logging: {e}", file=sys.stderr)

    @classmethod
    def _setup_console_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Attach a stdout StreamHandler at CONFIG['logging.console_level'].
        """
        console_handler = logging.StreamHandler(sys.stdout)
        console_level = CONFIG.get("logging.console_level", "INFO")
        console_handler.setLevel(getattr(logging, console_level, logging.INFO))
        console_handler.setFormatter(formatter)
        console_handler.addFilter(cls._context_filter)
        root_logger.addHandler(console_handler)

    @classmethod
    def get_logger(cls, name: str) -> "Logger":
        """
        Return the cached Logger for `name`, configuring logging on first use.
        """
        if not cls._configured:
            cls.configure()

        with cls._lock:
            if name not in cls._loggers:
                cls._loggers[name] = Logger(logging.getLogger(name), cls._context_filter)
            return cls._loggers[name]

    @classmethod
    def get_performance_logger(cls) -> PerformanceLogger:
        """Return the shared PerformanceLogger."""
        if cls._perf_logger is None:
            cls._perf_logger = PerformanceLogger(logging.getLogger("performance"))
        return cls._perf_logger


class Logger:
    """
    Wrapper around a standard logger with operation, timing and context helpers.
    """

    def __init__(self, standard_logger: logging.Logger, context_filter: Optional[ContextFilter] = None):
        self._logger = standard_logger
        self._context_filter = context_filter
        self._perf_logger = LoggerFactory.get_performance_logger()

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs) -> None:
        self._logger.critical(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(msg, *args, **kwargs)

    def log_operation(self, operation: str, status: str = "started", **details) -> None:
        """
        Log "[operation] STATUS | k=v | ..." at ERROR for failures, INFO otherwise.
        """
        msg_parts = [f"[{operation}]"]
        if status:
            msg_parts.append(status.upper())
        if details:
            msg_parts.append(" | ".join(f"{k}={v}" for k, v in details.items()))

        msg = " ".join(msg_parts)
        if status.lower() == "failed":
            self.error(msg)
        else:
            self.info(msg)

    def log_analysis(self, analysis_type: str, outcome: str, n_vars: int, n_samples: int) -> None:
        """
        Log a one-line summary of a model run when
        `logging.log_analysis_operations` is enabled.
        """
        if CONFIG.get("logging.log_analysis_operations"):
            self.info(
                f"{analysis_type}: outcome='{outcome}', "
                f"biomarkers={n_vars}, n={n_samples}"
            )

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        with self._perf_logger.track_time(operation, log_level):
            yield

    def get_timings(self) -> Dict[str, list]:
        return self._perf_logger.get_timings()

    def set_context(self, **kwargs) -> None:
        if self._context_filter:
            self._context_filter.set_context(**kwargs)

    def clear_context(self) -> None:
        if self._context_filter:
            self._context_filter.clear_context()


def get_logger(name: str) -> Logger:
    """
    Obtain a configured logger for the given name (typically `__name__`).
    """
    return LoggerFactory.get_logger(name)
