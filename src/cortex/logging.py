"""JSONL audit logging for memory events."""

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .memory.models import ResolutionRecord


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    principal: str | None = None
    session_id: str | None = None
    fact_id: str | None = None
    count: int | None = None
    reason: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Logger that writes structured memory events in JSONL format."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "audit.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".cortex" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._lock = threading.Lock()

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        """Write a log entry to the file."""
        with self._lock:
            self._rotate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log(
        self,
        event: str,
        *,
        principal: str | None = None,
        session_id: str | None = None,
        fact_id: str | None = None,
        count: int | None = None,
        reason: str | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            principal=principal,
            session_id=session_id,
            fact_id=fact_id,
            count=count,
            reason=reason,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_resolution(self, principal: str, record: ResolutionRecord) -> None:
        """Log one conflict resolution so it can be replayed in an audit."""
        self.log(
            "resolution",
            principal=principal,
            fact_id=record.existing_fact.id,
            **record.to_dict(),
        )

    def log_pruned(self, principal: str, fact_id: str, reason: str) -> None:
        """Log a fact soft-deleted by a maintenance pass."""
        self.log("fact_pruned", principal=principal, fact_id=fact_id, reason=reason)

    def log_extraction(
        self,
        principal: str,
        session_id: str,
        applied: int,
        *,
        reasoning: str | None = None,
    ) -> None:
        """Log a completed extraction cycle."""
        self.log(
            "extraction_complete",
            principal=principal,
            session_id=session_id,
            count=applied,
            reason=reasoning,
        )

    def log_extraction_failed(self, principal: str, error: str) -> None:
        """Log an extraction task that raised."""
        self.log("extraction_failed", principal=principal, error=error)

    def log_consolidation(
        self, principal: str, promoted: int, demoted: int, unchanged: int
    ) -> None:
        """Log the outcome of a consolidation pass."""
        self.log(
            "consolidation",
            principal=principal,
            promoted=promoted,
            demoted=demoted,
            unchanged=unchanged,
        )


# Global logger instance
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Configure and return the global logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
