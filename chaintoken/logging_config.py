"""
Logging configuration for chaintoken.

Provides structured JSON logging for token lifecycle audit trails. Audit
events carry fingerprints and counts only; key material and token bytes
are never logged.
"""

import json
import logging
import sys
import time
from typing import Optional

from . import config


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation systems.
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

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data)


class AuditLogger:
    """
    Specialized logger for token lifecycle events.

    Records issuance, attenuation, sealing, verification and authorization
    decisions.
    """

    def __init__(self, name: str = "chaintoken.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {"event_type": event_type, **kwargs}
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

    def token_built(self, root_key_fingerprint: str, root_key_id: Optional[int] = None) -> None:
        self._log(
            logging.INFO,
            "TOKEN_BUILT",
            root_key_fingerprint=root_key_fingerprint,
            root_key_id=root_key_id,
            block_count=1,
            message="Authority block signed"
        )

    def token_attenuated(self, root_key_fingerprint: str, block_count: int) -> None:
        self._log(
            logging.INFO,
            "TOKEN_ATTENUATED",
            root_key_fingerprint=root_key_fingerprint,
            block_count=block_count,
            message=f"Block {block_count - 1} appended"
        )

    def token_sealed(self, root_key_fingerprint: str, block_count: int) -> None:
        self._log(
            logging.INFO,
            "TOKEN_SEALED",
            root_key_fingerprint=root_key_fingerprint,
            block_count=block_count,
            message="Token sealed"
        )

    def token_verified(self, root_key_fingerprint: str, block_count: int, sealed: bool) -> None:
        self._log(
            logging.DEBUG,
            "TOKEN_VERIFIED",
            root_key_fingerprint=root_key_fingerprint,
            block_count=block_count,
            sealed=sealed,
            message=f"Token with {block_count} block(s) verified"
        )

    def token_rejected(self, reason: str) -> None:
        """Log a token that failed deserialization or verification."""
        self._log(
            logging.WARNING,
            "TOKEN_REJECTED",
            reason=reason,
            message=f"Token rejected: {reason}"
        )

    def authorization_decision(
        self,
        decision: str,
        policy_index: Optional[int] = None,
        failed_checks: int = 0,
        root_key_fingerprint: Optional[str] = None
    ) -> None:
        """Log an authorization decision."""
        level = logging.INFO if decision == "ALLOWED" else logging.WARNING
        self._log(
            level,
            "AUTHORIZATION_DECISION",
            decision=decision,
            policy_index=policy_index,
            failed_checks=failed_checks,
            root_key_fingerprint=root_key_fingerprint,
            message=f"Authorization decision: {decision}"
        )


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the command line tool.

    Args:
        level: Log level name; defaults to DEBUG when CHAINTOKEN_DEBUG is
            set, otherwise CHAINTOKEN_LOG_LEVEL
        json_format: Use JSON formatting; defaults to CHAINTOKEN_LOG_JSON
        log_file: Optional file path for log output
    """
    if not level:
        level = "DEBUG" if config.is_debug() else config.LOG_LEVEL
    if json_format is None:
        json_format = config.LOG_JSON

    if level.upper() not in LOG_LEVELS:
        raise ValueError(f"unknown log level {level!r}, expected one of {', '.join(LOG_LEVELS)}")

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

    # stdout carries command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


# Global audit logger instance
audit_log = AuditLogger()
