"""Logging configuration for Statecraft.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing around backend exports and imports

Environment Variables:
    STATECRAFT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    STATECRAFT_LOG_FILE: Path to log file (default: ~/.statecraft/statecraft.log)
    STATECRAFT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    STATECRAFT_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from mcp_stateset.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("export_state")
    async def export_state(self, include_secrets=False):
        ...

    async with timed_section("promote", target="deploy-1a2b3c4d"):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("statecraft.perf")
main_logger = logging.getLogger("statecraft")

_configured = False


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("STATECRAFT_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".statecraft" / "statecraft.log"
    path_str = os.environ.get("STATECRAFT_LOG_FILE", str(default_path))
    return Path(path_str).expanduser()


def setup_logging(level: Optional[int] = None) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects STATECRAFT_LOG_LEVEL, or `level` when given)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics

    Calling it again only adjusts the console level.
    """
    global _configured

    log_level = level if level is not None else get_log_level()
    if _configured:
        for handler in main_logger.handlers:
            if not isinstance(handler, RotatingFileHandler):
                handler.setLevel(log_level)
        return

    log_file = get_log_file()
    max_size_mb = int(os.environ.get("STATECRAFT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("STATECRAFT_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-28s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console goes to stderr so --json output on stdout stays clean
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "statecraft-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    main_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    main_logger.addHandler(console_handler)
    main_logger.addHandler(file_handler)

    # Package modules log under mcp_stateset.*
    pkg_logger = logging.getLogger("mcp_stateset")
    pkg_logger.setLevel(logging.DEBUG)
    pkg_logger.addHandler(console_handler)
    pkg_logger.addHandler(file_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    _configured = True
    main_logger.debug(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")


def _format_perf(operation: str, target: Optional[str], elapsed: float, status: str, extra: str = "") -> str:
    msg = f"{operation:20s} | {target or 'N/A':20s} | {elapsed:8.2f}ms | {status}"
    if extra:
        msg += f" | {extra}"
    return msg


def timed(operation: str, target: Optional[str] = None):
    """Decorator to log execution time of sync/async functions.

    Args:
        operation: Name of the operation (e.g., "export_state", "import_state")
        target: Optional label (inferred from self.name when omitted)
    """
    def decorator(func: Callable) -> Callable:
        def _target(args) -> Optional[str]:
            if target is None and args and hasattr(args[0], "name"):
                return str(args[0].name)
            return target

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            label = _target(args)
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000  # ms
                perf_logger.info(_format_perf(operation, label, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, label, elapsed, f"FAIL: {e}"))
                raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            label = _target(args)
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_format_perf(operation, label, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, label, elapsed, f"FAIL: {e}"))
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, target: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("push", target=str(source), dry_run=True):
            await orchestrator.push(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.info(_format_perf(operation, target, elapsed, "OK", extra_str))
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_perf(operation, target, elapsed, f"FAIL: {e}", extra_str))
        raise
