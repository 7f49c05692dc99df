"""Core protocol engine implementations."""

from rpengine.core.logging import (
    HTTPExchange,
    LoggingAsyncClient,
    LogLevel,
    ProtocolLogger,
    ResponseTooLargeError,
    configure_logging,
    get_protocol_logger,
    redact_sensitive,
    set_protocol_logger,
)

__all__ = [
    "HTTPExchange",
    "LoggingAsyncClient",
    "LogLevel",
    "ProtocolLogger",
    "ResponseTooLargeError",
    "configure_logging",
    "get_protocol_logger",
    "redact_sensitive",
    "set_protocol_logger",
]
