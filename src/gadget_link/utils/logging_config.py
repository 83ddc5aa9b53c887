"""Logging configuration for gadgetlink.

Provides configurable logging with:
- File-based logging with rotation
- Console output for the interactive run
- Timing decorators for inventory reads and applied actions

Environment Variables:
    GADGETLINK_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    GADGETLINK_LOG_FILE: Path to log file (default: ~/.gadgetlink/gadgetlink.log)
    GADGETLINK_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    GADGETLINK_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from gadget_link.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("inventory_read")
    def read(self):
        ...

    with timed_section("set_metric", adapter="usb0"):
        ...
"""
import functools
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("gadgetlink.perf")


def get_log_level(verbose: bool = False) -> int:
    """Get log level from environment."""
    if verbose:
        return logging.DEBUG
    level_str = os.environ.get("GADGETLINK_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".gadgetlink" / "gadgetlink.log"
    path_str = os.environ.get("GADGETLINK_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects GADGETLINK_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics (file only)
    """
    log_level = get_log_level(verbose)
    log_file = get_log_file()
    max_size_mb = int(os.environ.get("GADGETLINK_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("GADGETLINK_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    # Console output is what the operator reads; keep it short
    console_format = logging.Formatter("%(levelname)-7s %(message)s")
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "gadgetlink-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    app_logger = logging.getLogger("gadget_link")
    app_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    app_logger.handlers.clear()
    app_logger.addHandler(console_handler)
    app_logger.addHandler(file_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    app_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _perf_line(operation: str, target: Optional[str], elapsed: float, status: str) -> str:
    return f"{operation:20s} | {target or 'N/A':15s} | {elapsed:8.2f}ms | {status}"


def timed(operation: str, target: Optional[str] = None):
    """Decorator to log execution time of a function.

    Args:
        operation: Name of the operation (e.g., "inventory_read", "apply")
        target: Optional host label (inferred from self.host when omitted)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            label = target
            if label is None and args and hasattr(args[0], "host"):
                label = str(args[0].host)

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_perf_line(operation, label, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, label, elapsed, f"FAIL: {e}"))
                raise

        return wrapper

    return decorator


@contextmanager
def timed_section(operation: str, target: Optional[str] = None, **extra):
    """Context manager for timing code sections.

    Usage:
        with timed_section("set_metric", target="usb0", metric=100):
            backend.set_metric(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, target, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, target, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
