import logging
import re
from typing import Any, Dict

import structlog

# Keys whose values never reach the log output
SECRET_KEYS = frozenset(
    {
        "authorization",
        "secret",
        "api_key",
        "ingest_token",
        "x-relay-signature",
        "x-idempotency-key",
    }
)

_BEARER = re.compile(r"Bearer\s+[A-Za-z0-9\-_.=:+/]+")
# Webhook and executor URLs may embed basic-auth credentials
_URL_CREDENTIALS = re.compile(r"(https?://)[^/@\s:]+(:[^/@\s]*)?@")


def redact_secrets(_logger, _name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if str(key).lower() in SECRET_KEYS:
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str):
            if "Bearer " in value:
                value = _BEARER.sub("Bearer [REDACTED]", value)
            if "@" in value:
                value = _URL_CREDENTIALS.sub(r"\1[REDACTED]@", value)
            event_dict[key] = value
    return event_dict


def configure_structlog(level: str = "INFO") -> None:
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logging.basicConfig(format="%(message)s", level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
