"""Logging for the ``samltest`` package and its SAML traffic.

Everything logs under the ``samltest`` logger. Protocol milestones and the
HTTP exchanges made while fetching metadata go to ``samltest.protocol``,
with a verbosity picked from :class:`LogLevel`:

- ERROR: failures only
- INFO: one line per milestone or exchange
- DEBUG: adds headers and timing
- TRACE: adds bodies (only when trace is explicitly enabled)

SAML messages, signatures, session tokens, passwords and private keys are
redacted from every record before it reaches a handler.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any

import httpx

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

package_logger = logging.getLogger("samltest")
logger = logging.getLogger("samltest.protocol")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
BODY_LIMIT = 2000
EXCHANGE_HISTORY = 50
REDACTED = "[REDACTED]"


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    TRACE = TRACE


_LEVEL_NAMES = {
    "ERROR": LogLevel.ERROR,
    "WARNING": LogLevel.INFO,
    "INFO": LogLevel.INFO,
    "DEBUG": LogLevel.DEBUG,
    "TRACE": LogLevel.TRACE,
}


def _query_param(name: str, flags: int = 0) -> tuple[re.Pattern[str], str]:
    return re.compile(rf"({name}=)[^&\s]+", flags), rf"\1{REDACTED}"


def _json_field(names: str, flags: int = 0) -> tuple[re.Pattern[str], str]:
    return re.compile(rf'"({names})"\s*:\s*"[^"]+"', flags), rf'"\1": "{REDACTED}"'


REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    # HTTP-Redirect query strings and HTTP-POST form bodies
    *(_query_param(name) for name in ("SAMLResponse", "SAMLRequest", "Signature")),
    *(_query_param(name, re.IGNORECASE) for name in ("token", "password")),
    _json_field("SAMLResponse|SAMLRequest"),
    _json_field("password|token", re.IGNORECASE),
    (re.compile(r"(Authorization:\s*Bearer\s+)\S+", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"^(Bearer\s+)\S+", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"(Cookie:\s*)[^\r\n]+", re.IGNORECASE), rf"\1{REDACTED}"),
    (
        re.compile(r"-----BEGIN (RSA )?PRIVATE KEY-----.*?-----END (RSA )?PRIVATE KEY-----", re.DOTALL),
        "[REDACTED PRIVATE KEY]",
    ),
]


def redact_sensitive(text: str) -> str:
    """Return ``text`` with SAML payloads and credentials replaced by ``[REDACTED]``."""
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites records whose rendered message contains something sensitive."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_sensitive(message)
        if redacted != message:
            record.msg, record.args = redacted, None
        return True


def _clip(text: str) -> str:
    return text[:BODY_LIMIT] + ("..." if len(text) > BODY_LIMIT else "")


@dataclass
class HTTPExchange:
    """One outbound HTTP request and its response or transport error."""

    id: str
    timestamp: datetime
    method: str
    url: str
    request_headers: dict[str, str]
    request_body: str | None = None
    response_status: int | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    duration_ms: float | None = None
    error: str | None = None

    @classmethod
    def for_request(cls, request: httpx.Request) -> HTTPExchange:
        body = request.content.decode("utf-8", errors="replace") if request.content else None
        return cls(
            id=f"http_{id(request):08x}",
            timestamp=datetime.now(UTC),
            method=request.method,
            url=str(request.url),
            request_headers=dict(request.headers),
            request_body=body,
        )

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Serialize for JSON output, redacted unless ``include_sensitive``."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        if include_sensitive:
            return data

        for key in ("url", "request_body", "response_body"):
            if data[key] is not None:
                data[key] = redact_sensitive(data[key])
        for key in ("request_headers", "response_headers"):
            data[key] = {name: redact_sensitive(value) for name, value in data[key].items()}
        return data

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Render the exchange with as much detail as ``level`` allows."""
        show = (lambda text: text) if include_sensitive else redact_sensitive

        lines = [f"HTTP {self.method} {show(self.url)} -> {self.response_status or 'ERROR'}"]
        if self.duration_ms is not None:
            lines.append(f"  Duration: {self.duration_ms:.1f}ms")
        if self.error:
            lines.append(f"  Error: {self.error}")

        if level <= LogLevel.DEBUG:
            sections = (("Request Headers", self.request_headers), ("Response Headers", self.response_headers))
            for title, headers in sections:
                if headers:
                    lines.append(f"  {title}:")
                    lines.extend(f"    {name}: {show(value)}" for name, value in headers.items())

        if level <= LogLevel.TRACE:
            for title, body in (("Request Body", self.request_body), ("Response Body", self.response_body)):
                if body:
                    lines.append(f"  {title}:")
                    lines.append(f"    {_clip(show(body))}")

        return "\n".join(lines)


class ProtocolLogger:
    """Writes protocol milestones and HTTP exchanges to ``samltest.protocol``.

    The most recent ``max_exchanges`` exchanges are kept in memory so callers
    (and tests) can inspect what was fetched.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        trace_enabled: bool = False,
        max_exchanges: int = EXCHANGE_HISTORY,
    ) -> None:
        self._level = level
        self._trace_enabled = trace_enabled
        self._exchanges: deque[HTTPExchange] = deque(maxlen=max_exchanges)

    @property
    def level(self) -> LogLevel:
        return self._level

    @property
    def exchanges(self) -> list[HTTPExchange]:
        return list(self._exchanges)

    @property
    def effective_level(self) -> LogLevel:
        """The configured level, except TRACE degrades to DEBUG unless enabled."""
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    def log_exchange(self, exchange: HTTPExchange) -> None:
        self._exchanges.append(exchange)

        effective = self.effective_level
        if effective <= LogLevel.INFO:
            include_sensitive = self._trace_enabled and effective == LogLevel.TRACE
            logger.log(
                logging.DEBUG if effective <= LogLevel.DEBUG else logging.INFO,
                exchange.format_log(effective, include_sensitive),
            )

        if exchange.error:
            logger.error("HTTP error: %s %s: %s", exchange.method, redact_sensitive(exchange.url), exchange.error)

    def log_event(self, event_type: str, status: str, entity_id: str, **details: Any) -> None:
        """Log an audit milestone; failures are warnings."""
        parts = [event_type, status, f"entity={entity_id}"]
        parts.extend(f"{key}={value}" for key, value in details.items() if value is not None)
        logger.log(logging.WARNING if status == "failure" else logging.INFO, " ".join(parts))


class LoggingClient(httpx.Client):
    """``httpx.Client`` that reports every exchange, including transport errors."""

    def __init__(self, protocol_logger: ProtocolLogger | None = None, **kwargs: Any) -> None:
        self._protocol_logger = protocol_logger or get_protocol_logger()
        kwargs.setdefault("follow_redirects", True)
        super().__init__(**kwargs)

    @property
    def protocol_logger(self) -> ProtocolLogger:
        return self._protocol_logger

    def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response:
        exchange = HTTPExchange.for_request(request)
        started = time.perf_counter()
        try:
            response = super().send(request, **kwargs)
        except httpx.HTTPError as e:
            exchange.error = str(e)
            raise
        else:
            exchange.response_status = response.status_code
            exchange.response_headers = dict(response.headers)
            if not kwargs.get("stream"):
                exchange.response_body = response.text
            return response
        finally:
            exchange.duration_ms = (time.perf_counter() - started) * 1000
            self._protocol_logger.log_exchange(exchange)


_protocol_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Return the process-wide protocol logger, creating a default one on first use."""
    global _protocol_logger
    if _protocol_logger is None:
        _protocol_logger = ProtocolLogger()
    return _protocol_logger


def set_protocol_logger(protocol_logger: ProtocolLogger) -> None:
    global _protocol_logger
    _protocol_logger = protocol_logger


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Install redacting handlers on the ``samltest`` logger.

    Replaces any handlers from a previous call, so it is safe to call once per
    CLI invocation or app start.

    Args:
        level: LogLevel or its name; unknown names fall back to INFO.
        trace_enabled: Allow TRACE to log message bodies.
        log_file: Also write records to this file.

    Returns:
        The new global ProtocolLogger.
    """
    if isinstance(level, str):
        level = _LEVEL_NAMES.get(level.upper(), LogLevel.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = logging.Formatter(LOG_FORMAT)
    redacting = RedactingFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redacting)

    for old in list(package_logger.handlers):
        package_logger.removeHandler(old)
        old.close()
    for handler in handlers:
        package_logger.addHandler(handler)
    package_logger.setLevel(level)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)
    if trace_enabled:
        logger.warning("TRACE logging enabled - SAML message bodies will be logged")
    return protocol_logger
