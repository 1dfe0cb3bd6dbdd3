"""
Logging configuration for EmergencyCash.

Provides structured JSON logging for settlement audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Correlates every log line emitted while one settlement runs
settlement_id_var: ContextVar[str] = ContextVar('settlement_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        settlement_id = settlement_id_var.get()
        if settlement_id:
            log_data["settlement_id"] = settlement_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Logger for settlement audit events.

    Every settlement attempt produces a SETTLEMENT_REQUEST and exactly one
    SETTLEMENT_DECISION; the events in between trace the transfer.
    """

    def __init__(self, name: str = "emergencycash.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "settlement_id": settlement_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def settlement_request(self, card: str, uid: str, nonce: int, amount: int) -> None:
        self._log(
            logging.INFO,
            "SETTLEMENT_REQUEST",
            card=card,
            uid=uid,
            nonce=str(nonce),
            amount=str(amount),
            message=f"Settlement requested for {card} nonce {nonce}"
        )

    def settlement_decision(
        self,
        card: str,
        nonce: int,
        state: str,
        reason: Optional[str] = None,
        tx_hash: Optional[str] = None
    ) -> None:
        level = logging.INFO if reason is None else logging.WARNING
        self._log(
            level,
            "SETTLEMENT_DECISION",
            card=card,
            nonce=str(nonce),
            state=state,
            reason=reason,
            tx_hash=tx_hash,
            message=f"Settlement {state}" + (f" ({reason})" if reason else "")
        )

    def transfer_submitted(self, card: str, merchant: str, amount: int, tx_hash: str) -> None:
        self._log(
            logging.INFO,
            "TRANSFER_SUBMITTED",
            card=card,
            merchant=merchant,
            amount=str(amount),
            tx_hash=tx_hash,
            message=f"Transfer confirmed {tx_hash}"
        )

    def nonce_committed(self, replay_key: str, tx_hash: Optional[str]) -> None:
        self._log(
            logging.INFO,
            "NONCE_COMMITTED",
            replay_key=replay_key,
            tx_hash=tx_hash,
            message=f"Nonce marked used: {replay_key}"
        )

    def revocation_change(self, uid: str, revoked: bool) -> None:
        self._log(
            logging.WARNING if revoked else logging.INFO,
            "REVOCATION_CHANGE",
            uid=uid,
            revoked=revoked,
            message=f"UID {uid} {'revoked' if revoked else 'reinstated'}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # stderr keeps stdout free for command output such as INTENT_JSON
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_settlement_id(settlement_id: Optional[str] = None) -> str:
    """
    Set the settlement ID for the current context.

    Returns:
        The settlement ID that was set
    """
    if settlement_id is None:
        settlement_id = str(uuid.uuid4())
    settlement_id_var.set(settlement_id)
    return settlement_id


# Global audit logger instance
audit_log = AuditLogger()
