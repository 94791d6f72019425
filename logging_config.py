import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the root logger once for the whole process.

    Logs always go to stdout; when ``log_file`` is given they are also
    appended to that file.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    # Re-running setup (entrypoint + app import) must not duplicate handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, room_id: str = "", **fields):
    """Emit one structured room event as a single JSON line.

    Known fields are ``user``, ``ticket_id``, ``vote`` and ``error``; empty
    ones are left out.
    """
    entry = {
        "time": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "roomId": room_id,
    }
    for key, json_key in (("user", "user"), ("ticket_id", "ticketId"), ("vote", "vote"), ("error", "error")):
        value = fields.get(key)
        if value is not None and value != "":
            entry[json_key] = value
    level = logging.WARNING if event == "error" else logging.INFO
    logger.log(level, json.dumps(entry))
    return entry
