"""Structured logging setup.

Every handler installed here carries a `SecretRedactingFilter`, and structlog
runs the same `SecretRedactor` as a processor, so the relayer key and price
API key never reach a log line even when an exception message quotes them.
"""

import logging
import sys
from typing import Any, Iterable

import structlog
from pythonjsonlogger import jsonlogger

from relayb0t.config import Settings, get_settings

REDACTED = "***"

# Extra/event fields whose values are masked whatever they contain
SECRET_FIELDS = frozenset(
    {"relayer_private_key", "price_api_key", "private_key", "api_key", "password"}
)

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class SecretRedactor:
    """Masks configured secret values and secret-named fields."""

    def __init__(self, secrets: Iterable[str | None] = ()) -> None:
        values: set[str] = set()
        for secret in secrets:
            if not secret:
                continue
            values.add(secret)
            if secret[:2].lower() == "0x":
                values.add(secret[2:])
        # Longest first so a 0x-prefixed key is masked whole
        self._values = sorted(values, key=len, reverse=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretRedactor":
        return cls([settings.relayer_private_key, settings.price_api_key])

    def redact_text(self, text: str) -> str:
        for value in self._values:
            if value in text:
                text = text.replace(value, REDACTED)
        return text

    def redact_value(self, key: str, value: Any) -> Any:
        if key.lower() in SECRET_FIELDS and value:
            return REDACTED
        if isinstance(value, str):
            return self.redact_text(value)
        return value

    def __call__(self, logger: Any, method_name: str, event_dict: dict) -> dict:
        """structlog processor."""
        return {key: self.redact_value(key, value) for key, value in event_dict.items()}


class SecretRedactingFilter(logging.Filter):
    """Applies a `SecretRedactor` to a record's message and extras."""

    def __init__(self, redactor: SecretRedactor) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redactor.redact_text(record.getMessage())
        record.args = None
        for key, value in list(vars(record).items()):
            if key not in _RECORD_ATTRS:
                setattr(record, key, self.redactor.redact_value(key, value))
        return True


def setup_logging(settings: Settings | None = None) -> SecretRedactor:
    """Setup structured logging with JSON output and secret redaction."""
    settings = settings or get_settings()
    redactor = SecretRedactor.from_settings(settings)

    log_level = getattr(logging, settings.log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(SecretRedactingFilter(redactor))

    if settings.log_format == "json":
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # RPC and HTTP client chatter drowns out dispatch logs
    for noisy in ("httpx", "httpcore", "web3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redactor,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.info(f"Logging configured: level={settings.log_level}, format={settings.log_format}")
    return redactor
