"""Logging setup and per-tool metrics for the Todo MCP server.

Every MCP tool runs inside ``timed_operation``, which times the call,
records the outcome in the global ``metrics`` collector and emits
START/END debug lines sharing a short correlation id. Structured
rejections (version conflicts, partial bulk failures) are counted as
failures and tallied by error code.
"""
import json
import logging
import time
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

STATE_DIR = Path.home() / ".todo-mcp"
DEFAULT_LOG_DIR = STATE_DIR / "logs"
DEFAULT_METRICS_FILE = STATE_DIR / "metrics.json"
LOG_FILE_NAME = "todo-mcp.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def _sanitize_error_message(
    message: Optional[str], max_length: int = 200
) -> Optional[str]:
    """Make an error message safe to persist in metrics.

    Replaces the home directory with ``~``, collapses whitespace (including
    newlines) to single spaces and truncates to ``max_length`` characters,
    ending in ``...`` when cut.
    """
    if message is None:
        return None
    words = message.replace(str(Path.home()), "~").split()
    sanitized = " ".join(words)
    if len(sanitized) <= max_length:
        return sanitized
    return sanitized[: max_length - 3] + "..."


def _attach(target: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    target.addHandler(handler)


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``todo_mcp`` logger hierarchy to a rotating log file.

    Args:
        log_dir: Directory for ``todo-mcp.log``. Defaults to ~/.todo-mcp/logs/
        level: Level for the package logger and its handlers.
        max_bytes: Size at which the file is rotated (default: 10 MB).
        backup_count: Rotated files to keep.
        console: Also log to stderr, unless a stream handler is already attached.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger("todo_mcp")
    package_logger.setLevel(level)
    _attach(
        package_logger,
        RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        ),
        level,
    )

    # stdout belongs to the MCP stdio transport; StreamHandler defaults to stderr
    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if console and not has_console:
        _attach(package_logger, logging.StreamHandler(), level)

    package_logger.info(
        f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})"
    )
    return log_path


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ToolStats:
    """Running totals for one tool (or any named operation)."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    error_codes: Counter = field(default_factory=Counter)

    def add(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
            return
        self.error_count += 1
        self.last_error = _sanitize_error_message(error)
        self.last_error_time = datetime.now(timezone.utc)
        # Structured failures report a bare error code such as VERSION_CONFLICT
        if error and error.isupper() and " " not in error:
            self.error_codes[error] += 1

    def snapshot(self) -> Dict[str, Any]:
        """Rates and rounded durations for display."""
        avg = self.total_duration_ms / self.count if self.count else 0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(avg, 2),
            "min_duration_ms": round(self.min_duration_ms or 0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
            "error_codes": dict(self.error_codes),
        }

    def to_record(self) -> Dict[str, Any]:
        """Raw totals for the metrics file."""
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "total_duration_ms": self.total_duration_ms,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
            "error_codes": dict(self.error_codes),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ToolStats":
        return cls(
            count=record.get("count", 0),
            success_count=record.get("success_count", 0),
            error_count=record.get("error_count", 0),
            total_duration_ms=record.get("total_duration_ms", 0.0),
            min_duration_ms=record.get("min_duration_ms"),
            max_duration_ms=record.get("max_duration_ms", 0.0),
            last_error=record.get("last_error"),
            last_error_time=_parse_time(record.get("last_error_time")),
            error_codes=Counter(record.get("error_codes", {})),
        )


class MetricsCollector:
    """Thread-safe per-tool metrics, persisted as JSON.

    The file is rewritten atomically (temp file + rename) every
    ``auto_save_interval`` recorded calls and on explicit ``save_metrics``.
    Totals from a previous run are loaded at construction.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        """Initialize the metrics collector.

        Args:
            metrics_file: Where to persist. Defaults to ~/.todo-mcp/metrics.json
            auto_save_interval: Save every N recorded calls (0 disables).
        """
        self._stats: Dict[str, ToolStats] = defaultdict(ToolStats)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0

        self._load_metrics()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record one call of ``operation``.

        Args:
            operation: Tool name, e.g. 'todo_bulk_delete'.
            duration_ms: Wall time in milliseconds.
            success: Whether the call succeeded.
            error: Error message or error code when it did not.
        """
        with self._lock:
            self._stats[operation].add(duration_ms, success, error)
            self._unsaved += 1
            if 0 < self._auto_save_interval <= self._unsaved:
                self._save_metrics_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every tracked operation, keyed by name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations plus uptime."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            succeeded = sum(s.success_count for s in self._stats.values())
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": sum(s.error_count for s in self._stats.values()),
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": list(self._stats),
            }

    def reset(self) -> None:
        """Forget everything recorded so far."""
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now(timezone.utc)
            self._unsaved = 0

    def _load_metrics(self) -> bool:
        if not self._metrics_file.exists():
            return False
        try:
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
            loaded = {
                name: ToolStats.from_record(record)
                for name, record in data.get("operations", {}).items()
            }
            start_time = _parse_time(data.get("start_time"))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return False

        self._stats.update(loaded)
        if start_time:
            self._start_time = start_time
        logger.debug(f"Loaded metrics for {len(loaded)} operations from {self._metrics_file}")
        return True

    def _save_metrics_unlocked(self) -> bool:
        """Write the metrics file; the caller holds the lock."""
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: s.to_record() for name, s in self._stats.items()},
        }
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Write the metrics file now."""
        with self._lock:
            return self._save_metrics_unlocked()


metrics = MetricsCollector()


def _describe(error: BaseException) -> str:
    code = getattr(error, "code", None)
    name = getattr(code, "name", None)
    message = getattr(error, "message", None) or str(error)
    return f"{name}: {message}" if name else message


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a tool call and record its outcome in ``metrics``.

    Yields a dict the caller fills with result details. Setting
    ``op["error"]`` marks the call failed without raising, which is how
    tools report structured results such as VERSION_CONFLICT.

    Example:
        with timed_operation("todo_search", query="milk") as op:
            rows = search_service.search(user_id, term="milk")
            op["result_count"] = len(rows)
    """
    correlation_id = uuid.uuid4().hex[:8]
    details = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({details})")

    op: Dict[str, Any] = {"correlation_id": correlation_id}
    error: Optional[str] = None
    started = time.perf_counter()
    try:
        yield op
    except Exception as e:
        error = _describe(e)
        raise
    finally:
        if error is None and op.get("error"):
            error = str(op["error"])
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, duration_ms, error is None, error)

        outcome = "OK" if error is None else f"ERROR: {error}"
        extras = ", ".join(f"{k}={v}" for k, v in op.items() if k != "correlation_id")
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{outcome}] {extras}"
        )
