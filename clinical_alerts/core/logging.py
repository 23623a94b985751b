"""
Secure Logging Utility

- Contact details (e-mail addresses, phone numbers) never reach log output
- Structured [AUDIT] lines for every alert status transition
- One place to configure the root logger
"""

import logging
import re
import sys
import json
from typing import Optional, Dict, Any
from datetime import datetime, timezone


EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
PHONE_PATTERN = re.compile(r'\+\d{7,15}\b|\(\d{3}\)\s?\d{3}-\d{4}\b')


def sanitize_message(message: str) -> str:
    """Mask e-mail addresses and phone numbers in a log message"""
    message = EMAIL_PATTERN.sub('[email]', message)
    message = PHONE_PATTERN.sub('[phone]', message)
    return message


class ContactRedactionFilter(logging.Filter):
    """Logging filter that redacts contact details from every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            return True
        sanitized = sanitize_message(rendered)
        if sanitized != rendered:
            record.msg = sanitized
            record.args = None
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the process"""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContactRedactionFilter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[handler]
    )
    # Provider SDKs are chatty at INFO
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('twilio.http_client').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    return logging.getLogger(name)


def log_audit(event_type: str, actor: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event (e.g. ALERT_ACKNOWLEDGED)
        actor: Actor id, or a system actor such as "system/SLA"
        details: Additional event details
    """
    logger = get_logger("audit")
    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "actor": actor,
        "details": details
    }
    logger.info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
