"""Logging setup: one stdout handler that redacts credentials."""
from __future__ import annotations
import logging
import re
import sys
from typing import Optional

from .settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("googleapiclient.discovery_cache", "httpx", "httpcore", "apscheduler")


class SensitiveDataFilter(logging.Filter):
    """Masks bearer tokens, OAuth tokens and API keys in log records."""

    SENSITIVE_PATTERNS = [
        (re.compile(r"sk[-_][a-zA-Z0-9\-_]{20,}"), "***"),
        (re.compile(r"(Bearer\s+)([a-zA-Z0-9\-._~+/]+=*)", re.IGNORECASE), r"\1***"),
        (
            re.compile(
                r"([\"']?(?:access_token|refresh_token|id_token|client_secret|api_key)[\"']?\s*[:=]\s*[\"']?)([^\"'\s,}]+)",
                re.IGNORECASE,
            ),
            r"\1***",
        ),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.sanitize(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self.sanitize(v) if isinstance(v, str) else v for k, v in record.args.items()
                }
            else:
                record.args = tuple(
                    self.sanitize(arg) if isinstance(arg, str) else arg for arg in record.args
                )
        return True

    def sanitize(self, text: str) -> str:
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            text = pattern.sub(replacement, text)
        return text


def setup_logging(level: Optional[str] = None) -> None:
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    console_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
