"""Protocol logging for the relying party engine.

Provides HTTP-level logging of backchannel traffic (discovery, JWKS,
token and userinfo requests) with configurable log levels and
sensitive data protection.

Log levels:
- ERROR: Only log errors
- INFO: Log flow milestones (requests sent, responses received)
- DEBUG: Log HTTP details (headers, status codes, timing)
- TRACE: Log full request/response bodies including sensitive data (requires explicit enable)
"""

from __future__ import annotations

import itertools
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any

import httpx

# Custom log level for TRACE (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Module logger
logger = logging.getLogger("rpengine.protocol")

# Default upper bound for buffered backchannel responses (10 MB)
DEFAULT_MAX_RESPONSE_SIZE = 1024 * 1024 * 10

DEFAULT_USER_AGENT = "rpengine OpenIdConnect relying party"


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR  # 40
    INFO = logging.INFO  # 20
    DEBUG = logging.DEBUG  # 10
    TRACE = TRACE  # 5


# Patterns for sensitive data redaction
SENSITIVE_PATTERNS = [
    # OAuth/OIDC query and form parameters
    (re.compile(r"(client_secret=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(?<![a-z_])(code=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(access_token=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(refresh_token=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(id_token=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(id_token_hint=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(?<![a-z_])(state=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(nonce=)[^&\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    # HTTP headers (with or without "Authorization:" prefix for header dict values)
    (re.compile(r"(Authorization:\s*Bearer\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Authorization:\s*Basic\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"^(Bearer\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"^(Basic\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    # Cookies
    (re.compile(r"(Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Set-Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    # JSON fields
    (re.compile(r'"(client_secret)"\s*:\s*"[^"]+"', re.IGNORECASE), r'"\1": "[REDACTED]"'),
    (re.compile(r'"(access_token)"\s*:\s*"[^"]+"', re.IGNORECASE), r'"\1": "[REDACTED]"'),
    (re.compile(r'"(refresh_token)"\s*:\s*"[^"]+"', re.IGNORECASE), r'"\1": "[REDACTED]"'),
    (re.compile(r'"(id_token)"\s*:\s*"[^"]+"', re.IGNORECASE), r'"\1": "[REDACTED]"'),
]


def redact_sensitive(text: str) -> str:
    """Redact sensitive information from text.

    Args:
        text: Text that may contain sensitive data.

    Returns:
        Text with sensitive data redacted.
    """
    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class ResponseTooLargeError(httpx.HTTPError):
    """Raised when a backchannel response exceeds the configured buffer size."""

    def __init__(self, url: str, limit: int) -> None:
        super().__init__(f"Response from {url} exceeded the maximum buffer size of {limit} bytes")
        self.url = url
        self.limit = limit


@dataclass
class HTTPExchange:
    """Represents a single backchannel request/response exchange."""

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

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_sensitive: If True, include raw sensitive data.
                               If False, redact sensitive information.

        Returns:
            Dictionary representation of the exchange.
        """
        def process(value: str | None) -> str | None:
            if value is None:
                return None
            return value if include_sensitive else redact_sensitive(value)

        def process_headers(headers: dict[str, str]) -> dict[str, str]:
            if include_sensitive:
                return dict(headers)
            return {k: redact_sensitive(v) for k, v in headers.items()}

        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "method": self.method,
            "url": self.url if include_sensitive else redact_sensitive(self.url),
            "request_headers": process_headers(self.request_headers),
            "request_body": process(self.request_body),
            "response_status": self.response_status,
            "response_headers": process_headers(self.response_headers),
            "response_body": process(self.response_body),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Format the exchange for logging.

        Args:
            level: Log level determines how much detail to include.
            include_sensitive: If True, include raw sensitive data.

        Returns:
            Formatted log string.
        """
        lines = []
        url = self.url if include_sensitive else redact_sensitive(self.url)

        status = self.response_status or "ERROR"
        lines.append(f"HTTP {self.method} {url} -> {status}")

        if self.duration_ms is not None:
            lines.append(f"  Duration: {self.duration_ms:.1f}ms")

        if self.error:
            lines.append(f"  Error: {self.error}")

        if level <= LogLevel.DEBUG:
            lines.append("  Request Headers:")
            for name, value in self.request_headers.items():
                display_value = value if include_sensitive else redact_sensitive(value)
                lines.append(f"    {name}: {display_value}")

            if self.response_headers:
                lines.append("  Response Headers:")
                for name, value in self.response_headers.items():
                    display_value = value if include_sensitive else redact_sensitive(value)
                    lines.append(f"    {name}: {display_value}")

        if level <= LogLevel.TRACE:
            if self.request_body:
                body = self.request_body if include_sensitive else redact_sensitive(self.request_body)
                lines.append("  Request Body:")
                lines.append(f"    {body[:2000]}{'...' if len(body) > 2000 else ''}")

            if self.response_body:
                body = self.response_body if include_sensitive else redact_sensitive(self.response_body)
                lines.append("  Response Body:")
                lines.append(f"    {body[:2000]}{'...' if len(body) > 2000 else ''}")

        return "\n".join(lines)


class ProtocolLogger:
    """Configurable protocol logger for backchannel traffic.

    Holds the log level settings used by LoggingAsyncClient. Carries no
    per-request state, so one instance can be shared by concurrent
    requests.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        trace_enabled: bool = False,
    ) -> None:
        """Initialize the protocol logger.

        Args:
            level: Minimum log level.
            trace_enabled: Whether TRACE level is enabled (for sensitive data).
        """
        self._level = level
        self._trace_enabled = trace_enabled

    @property
    def level(self) -> LogLevel:
        """Get current log level."""
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        """Set log level."""
        self._level = value

    @property
    def trace_enabled(self) -> bool:
        """Whether TRACE level is enabled."""
        return self._trace_enabled

    @trace_enabled.setter
    def trace_enabled(self, value: bool) -> None:
        """Enable or disable TRACE level."""
        self._trace_enabled = value

    @property
    def effective_level(self) -> LogLevel:
        """Get effective log level (TRACE only if explicitly enabled)."""
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    def log_exchange(self, exchange: HTTPExchange) -> None:
        """Log an HTTP exchange.

        Args:
            exchange: The HTTP exchange to log.
        """
        effective = self.effective_level
        include_sensitive = self._trace_enabled and self._level <= LogLevel.TRACE

        if effective <= LogLevel.DEBUG:
            logger.debug(exchange.format_log(effective, include_sensitive))
        elif effective <= LogLevel.INFO:
            logger.info(exchange.format_log(effective, include_sensitive))

        if exchange.error:
            logger.error(f"HTTP error: {exchange.method} {redact_sensitive(exchange.url)}: {exchange.error}")


class LoggingAsyncClient(httpx.AsyncClient):
    """Async HTTPX client with protocol logging and a bounded response buffer.

    This is the backchannel used for discovery, JWKS, token and userinfo
    requests. It is long-lived and shared across requests.
    """

    _counter = itertools.count(1)

    def __init__(
        self,
        protocol_logger: ProtocolLogger | None = None,
        max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE,
        **kwargs: Any,
    ) -> None:
        """Initialize the logging client.

        Args:
            protocol_logger: ProtocolLogger to use. Uses the global logger if not provided.
            max_response_size: Maximum number of response body bytes to buffer.
            **kwargs: Additional arguments passed to httpx.AsyncClient.
        """
        self._protocol_logger = protocol_logger or get_protocol_logger()
        self.max_response_size = max_response_size

        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("User-Agent", DEFAULT_USER_AGENT)
        kwargs["headers"] = headers
        kwargs.setdefault("follow_redirects", False)

        super().__init__(**kwargs)

    @property
    def protocol_logger(self) -> ProtocolLogger:
        """Get the protocol logger."""
        return self._protocol_logger

    async def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response:  # type: ignore[override]
        """Send a request, buffering at most max_response_size bytes, and log the exchange."""
        exchange = HTTPExchange(
            id=f"http_{next(self._counter):04d}",
            timestamp=datetime.now(UTC),
            method=request.method,
            url=str(request.url),
            request_headers=dict(request.headers),
            request_body=_decode_body(request.content),
        )
        start_time = time.perf_counter()
        kwargs["stream"] = True

        try:
            response = await super().send(request, **kwargs)
            try:
                content = await self._read_bounded(response)
            finally:
                await response.aclose()
        except Exception as e:
            exchange.duration_ms = (time.perf_counter() - start_time) * 1000
            exchange.error = str(e)
            self._protocol_logger.log_exchange(exchange)
            raise

        # The buffered body is already decoded
        headers = httpx.Headers(response.headers)
        for name in ("Content-Encoding", "Content-Length"):
            headers.pop(name, None)
        buffered = httpx.Response(
            status_code=response.status_code,
            headers=headers,
            content=content,
            request=request,
        )

        exchange.duration_ms = (time.perf_counter() - start_time) * 1000
        exchange.response_status = buffered.status_code
        exchange.response_headers = dict(buffered.headers)
        exchange.response_body = _decode_body(buffered.content)
        self._protocol_logger.log_exchange(exchange)

        return buffered

    async def _read_bounded(self, response: httpx.Response) -> bytes:
        """Read the decoded body, failing once it exceeds max_response_size.

        The limit applies to decoded bytes, so a small compressed body cannot
        expand past it. Transports may hand back a response whose body was
        already read; its content is checked as a whole.
        """
        if response.is_stream_consumed:
            if len(response.content) > self.max_response_size:
                raise ResponseTooLargeError(str(response.request.url), self.max_response_size)
            return response.content

        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > self.max_response_size:
                raise ResponseTooLargeError(str(response.request.url), self.max_response_size)
            chunks.append(chunk)
        return b"".join(chunks)


def _decode_body(content: bytes | None) -> str | None:
    if not content:
        return None
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return "<binary content>"


# Global protocol logger instance
_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Get the global protocol logger instance.

    Returns:
        The global ProtocolLogger.
    """
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    """Set the global protocol logger instance.

    Args:
        logger_instance: ProtocolLogger to use globally.
    """
    global _global_logger
    _global_logger = logger_instance


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Configure engine and protocol logging.

    Args:
        level: Log level (ERROR, INFO, DEBUG, TRACE) or string name.
        trace_enabled: Whether to enable TRACE level (includes sensitive data).
        log_file: Optional file path to write logs to.

    Returns:
        Configured ProtocolLogger.
    """
    if isinstance(level, str):
        level_map = {
            "ERROR": LogLevel.ERROR,
            "INFO": LogLevel.INFO,
            "DEBUG": LogLevel.DEBUG,
            "TRACE": LogLevel.TRACE,
        }
        level = level_map.get(level.upper(), LogLevel.INFO)

    # The package logger covers both rpengine.protocol and the per-module loggers
    package_logger = logging.getLogger("rpengine")
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)

    if trace_enabled:
        package_logger.warning(
            "TRACE logging enabled - sensitive data (tokens, secrets) will be logged!"
        )

    return protocol_logger
