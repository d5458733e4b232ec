"""
Structured logging for job lifecycle and upload events.
Writes a human-readable line through the standard logger and, optionally, a
JSON line per event for later analysis.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


class StructuredLogger:
    """
    Logger that emits both console lines and machine-parseable JSONL events.

    Usage:
        logger = StructuredLogger("tidal_queue", log_dir=Path("logs"))
        logger.info("job_enqueued", job_id="job-1", type="track", priority="high")
    """

    def __init__(
        self,
        name: str,
        log_dir: Optional[Path] = None,
        enable_json: bool = True,
    ):
        """
        Args:
            name: Logger name for console output.
            log_dir: Directory for JSONL files (None disables JSON output).
            enable_json: Enable JSON file logging when ``log_dir`` is set.
        """
        self.name = name
        self._logger = logging.getLogger(name)
        self.enable_json = enable_json and log_dir is not None

        self._json_file = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            json_log_path = log_dir / f"tidal_queue_{timestamp}.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def set_session_context(self, **kwargs) -> None:
        """Set context that appears in every JSON entry."""
        self._session_context.update(kwargs)

    @staticmethod
    def _format_message(event: str, **context) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, TypeError, ValueError) as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def _emit(self, level: int, event: str, **context) -> None:
        self._logger.log(level, self._format_message(event, **context))
        if self.enable_json:
            self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._emit(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._emit(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self._emit(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self._emit(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close the JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class JobEventLogger:
    """Named events for the job lifecycle."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def job_enqueued(self, job_id: str, job_type: str, target_id: int, priority: str):
        self.logger.info(
            "job_enqueued",
            job_id=job_id,
            type=job_type,
            target_id=target_id,
            priority=priority,
        )

    def job_deduplicated(self, job_id: str, status: str, revived: bool):
        self.logger.info(
            "job_deduplicated", job_id=job_id, status=status, revived=revived
        )

    def job_dequeued(self, job_id: str, priority: str, waited_ms: int):
        self.logger.debug(
            "job_dequeued", job_id=job_id, priority=priority, waited_ms=waited_ms
        )

    def job_status_changed(self, job_id: str, old: str, new: str):
        self.logger.debug("job_status_changed", job_id=job_id, old=old, new=new)

    def job_recovered(self, job_id: str):
        self.logger.warning("job_recovered", job_id=job_id)

    def job_stuck(self, job_id: str, idle_ms: int):
        self.logger.warning("job_stuck", job_id=job_id, idle_ms=idle_ms)

    def job_cancel_requested(self, job_id: str, status: str):
        self.logger.info("job_cancel_requested", job_id=job_id, status=status)


class UploadEventLogger:
    """Named events for chunked uploads."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def chunk_sent(self, upload_id: str, index: int, total: int, uploaded: int):
        self.logger.debug(
            "upload_chunk_sent",
            upload_id=upload_id,
            chunk=index + 1,
            total_chunks=total,
            uploaded_bytes=uploaded,
        )

    def upload_completed(
        self, upload_id: str, size_bytes: int, duration_s: float, action: str
    ):
        self.logger.info(
            "upload_completed",
            upload_id=upload_id,
            size_bytes=size_bytes,
            size_mb=round(size_bytes / (1024 * 1024), 2),
            duration_s=round(duration_s, 2),
            action=action,
        )

    def upload_failed(self, upload_id: str, error: str, chunk: Optional[int] = None):
        self.logger.error(
            "upload_failed", upload_id=upload_id, error=error, chunk=chunk
        )


def create_structured_logger(
    log_dir: Optional[Path] = None, enable_json: bool = False
) -> tuple[StructuredLogger, JobEventLogger, UploadEventLogger]:
    """
    Create all structured loggers.

    Returns:
        Tuple of (base_logger, job_logger, upload_logger)
    """
    base = StructuredLogger("tidal_queue.events", log_dir=log_dir, enable_json=enable_json)
    return base, JobEventLogger(base), UploadEventLogger(base)
