"""
Run Identifier Utility for MongoDB Diff

Every diff or retry run gets an identifier that is stamped on its log
lines and status records. Identifiers start with the UTC start time so
status records sort by run.
"""

import contextvars
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_current_run: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('run_id', default=None)


def generate_run_id(now: Optional[datetime] = None) -> str:
    """
    Build a run ID such as 20261019T093015Z-1f2e3d4c.

    Args:
        now: Start time, the current UTC time if not given
    """
    started = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return f"{started}-{uuid.uuid4().hex[:8]}"


def get_run_id() -> Optional[str]:
    """Return the run ID of the current context, or None outside a run."""
    return _current_run.get()


class RunIdContext:
    """
    Scopes a run ID to a block; worker threads see it when tasks run in a
    copy of the submitting thread's context.
    """

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or generate_run_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = _current_run.set(self.run_id)
        logger.debug(f"Entered run {self.run_id}")
        return self.run_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _current_run.reset(self._token)


def run_id_filter(record: logging.LogRecord) -> bool:
    """Logging filter stamping record.run_id; never drops a record."""
    record.run_id = get_run_id() or "N/A"
    return True
