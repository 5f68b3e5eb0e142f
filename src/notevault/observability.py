"""Logging setup and per-operation metrics for Notevault.

``configure_logging`` attaches a rotating file handler (and optionally a
stderr handler) to the ``notevault`` logger. ``timed_operation`` and
``traced`` time a block or function, tag its START/END debug lines with a
short correlation id and feed the global ``metrics`` collector.
"""
import functools
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

NOTEVAULT_HOME = Path.home() / ".notevault"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the notevault loggers to ``<log_dir>/notevault.log``.

    Calling it again does not add duplicate handlers.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else NOTEVAULT_HOME / "logs"
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("notevault")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers = package_logger.handlers

    log_file = log_path / "notevault.log"
    if not any(isinstance(h, RotatingFileHandler) for h in handlers):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if console and not has_console:
        # stdout carries the MCP stdio transport
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    package_logger.info(f"Logging to {log_file} at level {logging.getLevelName(level)}")
    return log_path


@dataclass
class OperationStats:
    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class MetricsCollector:
    """Call counts, error counts and mean duration per operation name."""

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = (
            Path(metrics_file) if metrics_file else NOTEVAULT_HOME / "metrics.json"
        )

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.count += 1
            stats.total_ms += duration_ms
            if not success:
                stats.error_count += 1
                stats.last_error = error
                stats.last_error_time = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "count": s.count,
                    "success_count": s.count - s.error_count,
                    "error_count": s.error_count,
                    "avg_duration_ms": round(s.total_ms / s.count, 2) if s.count else 0,
                    "last_error": s.last_error,
                    "last_error_time": (
                        s.last_error_time.isoformat() if s.last_error_time else None
                    ),
                }
                for name, s in self._stats.items()
            }

    def get_summary(self) -> Dict[str, Any]:
        """Totals across every operation, as shown by ``nv_status``."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            errors = sum(s.error_count for s in self._stats.values())
            return {
                "total_operations": total,
                "total_errors": errors,
                "overall_success_rate": (total - errors) / total if total else 1.0,
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)

    def save_metrics(self) -> bool:
        """Write the current metrics to the metrics file.

        Returns:
            False when the file could not be written (the error is logged).
        """
        snapshot = {
            "start_time": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.get_metrics(),
        }
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        return True


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time the enclosed block and record it under ``operation``.

    Yields a dict; keys added to it are included in the END log line.
    """
    correlation_id = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {}
    details = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({details})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield info
    except Exception as e:
        error = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, duration_ms, error is None, error)
        outcome = "OK" if error is None else f"ERROR: {error}"
        extra = ", ".join(f"{k}={v}" for k, v in info.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{outcome}] {extra}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run the decorated function inside ``timed_operation``.

    Sized results (lists, tuples, dicts) log their length as result_count.
    """

    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(name) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore

    return decorator
