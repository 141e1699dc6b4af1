"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from recon_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_reconciliation(
    owner_id: str,
    run_id: Optional[str],
    model: str,
    total_transactions: int,
    auto_confirmed: int,
    needs_review: int,
    match_rate: int,
    stopped_early: bool,
    duration_ms: float,
) -> None:
    """Log structured run outcome for usage analysis"""
    logging.info(
        "Reconciliation completed",
        extra={
            "owner_id": owner_id,
            "run_id": run_id,
            "step": "reconcile_complete",
            "model": model,
            "total_transactions": total_transactions,
            "auto_confirmed": auto_confirmed,
            "needs_review": needs_review,
            "match_rate": match_rate,
            "stopped_early": stopped_early,
            "duration_ms": duration_ms,
        },
    )
