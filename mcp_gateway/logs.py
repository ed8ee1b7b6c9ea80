"""
Structured JSON logging.

Gateway logs go to stdout and are collected by the cluster's logging agent.
Each record is one JSON object so that subject, tool, outcome and request_id
can be indexed and alerted on. Structured fields are attached with:

    logger.info("Tool call authorized", extra={"event_data": {"tool": "diagnose_pod"}})
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "WARNING",
         "logger": "mcp_gateway.dispatcher", "message": "authz_denied",
         "request_id": "7f3a2c1e", "tool": "remediate_pod_restart"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "event_data"):
            log_entry.update(record.event_data)
        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)
        # default=str keeps datetimes and sets from breaking a log line
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )
