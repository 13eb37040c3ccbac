import csv
import json
import os
import threading
from datetime import datetime

from config import AUDIT_LOG_PATH

HEADER = [
    "Timestamp",
    "Event",
    "ChatID",
    "ProjectID",
    "LoopID",
    "Source",
    "Destination",
    "Details",
]


class AuditLogger:
    """
    Append-only CSV trail of the side effects a request produced: model calls,
    model fallbacks, tool executions and persisted messages.
    """

    def __init__(self, filepath=AUDIT_LOG_PATH):
        self.filepath = filepath
        self.lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.filepath)

    def _ensure_header(self):
        """Creates the CSV file and writes the header if it doesn't exist."""
        os.makedirs(os.path.dirname(os.path.abspath(self.filepath)), exist_ok=True)
        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            with open(self.filepath, "a", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(HEADER)

    def log_event(
        self,
        event,
        chat_id=None,
        project_id=None,
        loop_id=None,
        source=None,
        destination=None,
        details=None,
    ):
        """
        Appends one event row. Writing is skipped when no path is configured.
        """
        if not self.enabled:
            return

        def serialize(value):
            if value is None:
                return "N/A"
            if isinstance(value, (dict, list)):
                return json.dumps(value, default=str)
            return str(value)

        row = [
            datetime.now().isoformat(),
            serialize(event),
            serialize(chat_id),
            serialize(project_id),
            serialize(loop_id),
            serialize(source),
            serialize(destination),
            "" if details is None else serialize(details),
        ]

        with self.lock:
            self._ensure_header()
            with open(self.filepath, "a", newline="", encoding="utf-8") as f:
                csv.writer(f, quoting=csv.QUOTE_ALL).writerow(row)


# Create a single, global instance to be used by the entire application
audit_log = AuditLogger()
