"""Logging setup.

Guardian and student contact details (email addresses, phone numbers)
must never reach the log stream; every handler carries
``ContactSafeFilter``.  Identifiers such as post or delivery IDs are
left alone.
"""
import logging
import logging.config
import re

REDACTED = "[REDACTED]"

CONTACT_PATTERNS = [
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    # E.164
    re.compile(r"\+\d{8,15}\b"),
    # domestic, hyphenated or not
    re.compile(r"\b0\d{1,4}-\d{1,4}-\d{3,4}\b"),
    re.compile(r"\b0\d{9,10}\b"),
]


def redact_contacts(text: str) -> str:
    for pattern in CONTACT_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class ContactSafeFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_contacts(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(redact_contacts(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {
                key: redact_contacts(value) if isinstance(value, str) else value
                for key, value in record.args.items()
            }

        return True


def setup_logging() -> None:
    from app.core.settings import get_settings

    settings = get_settings()
    level = settings.log_level.upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"contact_safe": {"()": "app.core.logging.ContactSafeFilter"}},
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["contact_safe"],
                }
            },
            "root": {"handlers": ["console"], "level": level},
            "loggers": {
                "app.posts": {"level": level},
                "sqlalchemy.engine": {"level": "INFO" if settings.sql_echo else "WARNING"},
                "uvicorn.access": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            },
        }
    )
