"""
Run Context - logging, warnings and progress shared by every export component
One RunLogger and one ProgressTracker exist per run and are handed to each component.
"""

import os
import json
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

# Context keys whose values are filesystem paths (reduced to basenames when redacted).
_PATH_CONTEXT_KEYS = {"file", "source", "destination", "path", "report", "directory"}


def new_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


def record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions so a broken UI cannot stop an export."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


class RunLogger:
    """Persist run events to a timestamped text log and a JSONL log."""

    def __init__(
        self,
        logs_dir: str,
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log")
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl")
        self._text_handle = None
        self._jsonl_handle = None

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None and not handle.closed:
                handle.close()

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in _PATH_CONTEXT_KEYS:
            return os.path.basename(os.path.normpath(value))
        return value

    def log(self, level: str, event: str, message: str, **context) -> None:
        payload = {
            "ts": datetime.now().isoformat(),
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": {key: self._redact_value(key, value) for key, value in context.items()},
        }
        if self.enabled:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()

            text_context = ""
            if payload["context"]:
                context_parts = [f"{key}={value}" for key, value in sorted(payload["context"].items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{payload['ts']}] {payload['level']} {event}: {message}{text_context}\n")
            self._text_handle.flush()
        safe_progress(self.event_callback, payload)


def sync_warning_events(
    warnings: List[Dict],
    cursor: int,
    run_logger: Optional[RunLogger],
) -> int:
    """Replay warnings recorded since ``cursor`` into the run log and return the new cursor."""
    if not run_logger:
        return len(warnings)
    while cursor < len(warnings):
        warning = warnings[cursor]
        context = {
            key: value
            for key, value in warning.items()
            if key not in {"code", "message"}
        }
        run_logger.log("warning", warning.get("code", "warning"), warning.get("message", ""), **context)
        cursor += 1
    return cursor


class ProgressTracker:
    """
    Exported-item counter and abort flag for one export run.

    The orchestrator owns the tracker; the reorganizer and the reporter only
    read the abort flag and write log lines through it.
    """

    def __init__(
        self,
        total: int = 0,
        progress_callback=None,
        cancel_event: Optional[threading.Event] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.total = total
        self.exported = 0
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.run_logger = run_logger

    @property
    def abort_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def complete(self) -> bool:
        return self.exported == self.total

    def log(self, level: str, event: str, message: str, **context) -> None:
        if self.run_logger is not None:
            self.run_logger.log(level, event, message, **context)

    def status(self, message: str, **context) -> None:
        print(f"  {message}")
        self.log("info", "status", message, **context)
        safe_progress(self.progress_callback, self.exported, self.total, message)

    def advance(self, count: int) -> bool:
        """
        Add ``count`` exported items.

        Returns:
            True when the exported count has reached the total
        """
        if count < 0 or self.exported + count > self.total:
            raise ValueError(
                f"Cannot advance progress by {count}: {self.exported} of {self.total} items already exported"
            )
        self.exported += count
        message = f"Exported {self.exported} of {self.total} items"
        print(f"  {message}")
        self.log("info", "progress", message, exported=self.exported, total=self.total)
        safe_progress(self.progress_callback, self.exported, self.total, message)
        return self.exported == self.total
