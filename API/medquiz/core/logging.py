import logging
import re
import sys

DOMAIN_CONTENT = "content"
DOMAIN_SESSION = "session"
DOMAIN_PERSISTENCE = "persistence"
DOMAIN_TIMER = "timer"

# Endpoints polled by orchestrators and dashboards; their 200s are noise in the access log.
_POLLED_PATHS = ("/health", "/metrics/sync")


def get_domain_logger(name: str, domain: str) -> logging.LoggerAdapter[logging.Logger]:
    """Return a logger that tags every record with ``domain`` (content, session, persistence, timer)."""
    return logging.LoggerAdapter(logging.getLogger(name), {"domain": domain})


class DomainDefaultFilter(logging.Filter):
    """Records from uvicorn, SQLAlchemy and friends carry no domain; tag them ``api``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "domain"):
            record.domain = "api"  # type: ignore[attr-defined]
        return True


_SECRET_PATTERNS = [
    re.compile(r"(?i)(x-api-key\s*[=:]\s*)([^\s,;]+)"),
    re.compile(r"(?i)(authorization\s*[=:]\s*bearer\s+)([^\s,;]+)"),
    re.compile(r"(?i)(access_token\s*[=:]\s*)([^\s,;&]+)"),
    re.compile(r"(?i)(jwt_secret\s*[=:]\s*)([^\s,;]+)"),
    # Credentials inside DATABASE_URL / REDIS_URL style DSNs.
    re.compile(r"(?i)((?:postgresql(?:\+asyncpg)?|redis|rediss)://[^:/@\s]*:)([^@\s]+)(?=@)"),
]


def redact_secrets(message: str) -> str:
    text = str(message or "")
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


class SecretRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(record.getMessage())
        record.args = ()
        return True


class SuppressPollingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not (" 200" in msg and any(f"GET {path}" in msg for path in _POLLED_PATHS))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | [%(domain)s] | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    domain_filter = DomainDefaultFilter()
    redaction_filter = SecretRedactionFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(domain_filter)
        handler.addFilter(redaction_filter)
    # Engine echo and driver chatter drown out session transitions at INFO.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").addFilter(SuppressPollingFilter())
