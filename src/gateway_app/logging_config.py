import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

ANOMALY_LOGGER_NAME = "gateway_app.anomalies"

anomaly_logger = logging.getLogger(ANOMALY_LOGGER_NAME)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        fields = getattr(record, "anomaly_fields", None)
        if isinstance(fields, dict):
            log_record.update(fields)
        return json.dumps(log_record, default=str)


def setup_anomaly_logger(log_dir: str) -> logging.Logger:
    """Attaches a rotating JSON file handler to the anomaly logger.

    Anomalies are bookkeeping problems the API caller never sees: pricing
    misses, failed debits, dropped or failed request-log writes. They still
    propagate to the root logger so they show up on the console as well.
    """
    os.makedirs(log_dir, exist_ok=True)
    anomaly_logger.setLevel(logging.INFO)
    log_path = os.path.abspath(os.path.join(log_dir, "anomalies.log"))

    for existing in list(anomaly_logger.handlers):
        if not isinstance(existing, RotatingFileHandler):
            continue
        if existing.baseFilename == log_path:
            return anomaly_logger
        anomaly_logger.removeHandler(existing)
        existing.close()

    handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=2)
    handler.setFormatter(JsonFormatter())
    anomaly_logger.addHandler(handler)
    return anomaly_logger


def configure_logging(level: str = "INFO", *, anomaly_log_dir: str | None = None) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))
    if anomaly_log_dir:
        setup_anomaly_logger(anomaly_log_dir)


def log_anomaly(kind: str, **fields: Any) -> None:
    anomaly_logger.warning(
        "gateway anomaly: %s",
        kind,
        extra={"anomaly_fields": {"anomaly": kind, **fields}},
    )
