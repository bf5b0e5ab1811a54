"""Log filters for PII masking."""

import logging
import re


class PIIFilter(logging.Filter):
    """Masks PII (emails, phone numbers) in log messages."""

    EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
    # Indian mobile numbers with optional +91/0 prefix, and 3-3-4 grouped numbers
    PHONE_PATTERN = re.compile(
        r"(?<![\w])(?:\+91[-\s]?|0)?[6-9]\d{9}(?!\d)|\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b"
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            msg = record.msg
            if "@" in msg:
                msg = self.EMAIL_PATTERN.sub("[EMAIL]", msg)
            if any(c.isdigit() for c in msg):
                msg = self.PHONE_PATTERN.sub("[PHONE]", msg)
            record.msg = msg
        return True
